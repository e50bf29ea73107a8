"""
Capability Gateway: the three external capabilities the compiler depends on.

- generate / complete: conversational generation (OpenAI)
- retrieve: document retrieval over the injected vector store
- synthesize: text-to-speech (ElevenLabs)
"""
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from . import llm
from .elevenlabs_client import tts_to_bytes
from .exceptions import SynthesisFailure
from .llm import GenerationResult
from .retrieval import InMemoryVectorStore, Retriever

logger = logging.getLogger(__name__)


class Gateway(Protocol):
    async def generate(self, conversation: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> GenerationResult: ...

    async def complete(self, prompt: str, json_mode: bool = False) -> str: ...

    async def retrieve(self, query: str, document_ids: Sequence[str]) -> str: ...

    async def index_document(self, document_id: str, text: str) -> int: ...

    async def synthesize(self, text: str, language_code: str) -> bytes: ...


class CapabilityGateway:
    def __init__(self, retriever: Optional[Retriever] = None):
        self.retriever = retriever or Retriever(InMemoryVectorStore())

    async def generate(self, conversation, tools=None) -> GenerationResult:
        return await llm.generate(conversation, tools)

    async def complete(self, prompt: str, json_mode: bool = False) -> str:
        return await llm.complete(prompt, json_mode=json_mode)

    async def retrieve(self, query: str, document_ids: Sequence[str]) -> str:
        return await self.retriever.retrieve(query, document_ids)

    async def index_document(self, document_id: str, text: str) -> int:
        count = await self.retriever.index_document(document_id, text)
        logger.info(f"Indexed document {document_id} into {count} chunks")
        return count

    async def synthesize(self, text: str, language_code: str) -> bytes:
        try:
            return await tts_to_bytes(text, language_code)
        except RuntimeError as e:
            if isinstance(e, SynthesisFailure):
                raise
            # Missing credentials surface as RuntimeError from the client
            raise SynthesisFailure(str(e)) from e


_gateway: Optional[CapabilityGateway] = None

def get_gateway() -> CapabilityGateway:
    global _gateway
    if _gateway is None:
        _gateway = CapabilityGateway()
    return _gateway
