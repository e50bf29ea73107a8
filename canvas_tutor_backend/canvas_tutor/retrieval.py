"""
Document retrieval: chunking, an injectable vector store and the retriever
that answers `retrieve` tool calls.
"""
import logging
import math
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from . import llm
from .settings import CHUNK_OVERLAP, CHUNK_SIZE, RETRIEVAL_TOP_K

logger = logging.getLogger(__name__)

EmbedFn = Callable[[List[str]], Awaitable[List[List[float]]]]

CHUNK_SEPARATOR = "\n\n---\n\n"


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[str]:
    """Fixed-width sliding window over the text; consecutive chunks share `overlap` characters."""
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")
    chunks = []
    i = 0
    while i < len(text):
        chunks.append(text[i:i + chunk_size])
        i += chunk_size - overlap
    return chunks


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class VectorStore(Protocol):
    def put(self, document_id: str, chunks: List[str], vectors: List[List[float]]) -> None: ...

    def query(self, document_ids: Sequence[str], query_vector: Sequence[float], k: int) -> List[Tuple[str, float]]: ...


class InMemoryVectorStore:
    """Brute-force cosine search; fine for the handful of documents a session attaches."""

    def __init__(self):
        self._documents: Dict[str, Tuple[List[str], List[List[float]]]] = {}

    def put(self, document_id: str, chunks: List[str], vectors: List[List[float]]) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(f"{len(chunks)} chunks but {len(vectors)} vectors for {document_id}")
        self._documents[document_id] = (list(chunks), [list(v) for v in vectors])
        logger.info(f"Stored {len(vectors)} vectors for document {document_id}")

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._documents

    def query(self, document_ids: Sequence[str], query_vector: Sequence[float], k: int) -> List[Tuple[str, float]]:
        scored = []
        for document_id in document_ids:
            entry = self._documents.get(document_id)
            if entry is None:
                logger.warning(f"Document {document_id} is not indexed, skipping")
                continue
            chunks, vectors = entry
            for chunk, vector in zip(chunks, vectors):
                scored.append((chunk, cosine_similarity(query_vector, vector)))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]


class Retriever:
    def __init__(self, store: VectorStore, embed: Optional[EmbedFn] = None, top_k: int = RETRIEVAL_TOP_K):
        self.store = store
        self.embed = embed or llm.embed
        self.top_k = top_k

    async def index_document(self, document_id: str, text: str) -> int:
        chunks = chunk_text(text)
        vectors = await self.embed(chunks) if chunks else []
        self.store.put(document_id, chunks, vectors)
        return len(chunks)

    async def retrieve(self, query: str, document_ids: Sequence[str]) -> str:
        # No allow-listed documents means nothing to search, not an error
        if not document_ids:
            return ""
        [query_vector] = await self.embed([query])
        top = self.store.query(document_ids, query_vector, self.top_k)
        for rank, (_, score) in enumerate(top, start=1):
            logger.info(f"  [Chunk {rank}] Score: {score:.4f}")
        logger.info(f"Retrieved {len(top)} relevant chunks for query: {query}")
        return CHUNK_SEPARATOR.join(chunk for chunk, _ in top)
