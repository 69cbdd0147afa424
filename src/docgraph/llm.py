from __future__ import annotations
from typing import Any, Dict, Optional
from langchain_ollama import ChatOllama, OllamaEmbeddings
from .config import settings


class LLMClient:
    """
    Chat and embedding models bound to one credential. The key travels as a
    bearer token so a hosted Ollama endpoint can enforce per-key quotas.
    """

    def __init__(
        self,
        api_key: str,
        chat_model: str | None = None,
        embedding_model: str | None = None,
        temperature: float = 0.1,
    ):
        chat_model = chat_model or settings.ollama_chat_model
        embedding_model = embedding_model or settings.ollama_embedding_model
        client_kwargs = {"headers": {"Authorization": f"Bearer {api_key}"}}

        self.chat = ChatOllama(
            model=chat_model,
            temperature=temperature,
            base_url=settings.ollama_base_url,
            client_kwargs=client_kwargs,
        )
        self.embeddings = OllamaEmbeddings(
            model=embedding_model,
            base_url=settings.ollama_base_url,
            client_kwargs=client_kwargs,
        )

    def structured(self, schema: Dict[str, Any]):
        return self.chat.with_structured_output(schema, method="json_schema")


def build_client(
    kind: str,
    api_key: str,
    schema: Optional[Dict[str, Any]] = None,
    temperature: Optional[float] = None,
):
    """Client factory handed to every KeyRotationPool."""
    if kind == "embedding":
        return LLMClient(api_key).embeddings

    if kind in ("extraction", "query_entities"):
        client = LLMClient(
            api_key,
            chat_model=settings.ollama_extraction_model,
            temperature=(
                settings.extraction_temperature if temperature is None else temperature
            ),
        )
        if schema is None:
            raise ValueError(f"{kind} client requires a schema")
        return client.structured(schema)

    if kind == "answer":
        client = LLMClient(
            api_key,
            temperature=settings.answer_temperature if temperature is None else temperature,
        )
        return client.structured(schema) if schema else client.chat

    raise ValueError(f"Unknown client kind: {kind}")
