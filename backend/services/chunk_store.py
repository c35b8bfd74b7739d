"""Chunk stores: the read side of document ingestion."""
import json
import logging
from typing import Dict, List, Optional

import numpy as np
from supabase import create_client, Client

from models.chunk import Chunk
from config import SUPABASE_URL, SUPABASE_KEY

logger = logging.getLogger(__name__)


class ChunkStore:
    """Read-only access to ingested chunks and their embeddings."""

    def get_chunks_for_document(self, document_id: str) -> List[Chunk]:
        raise NotImplementedError

    def get_all_chunks(self) -> List[Chunk]:
        raise NotImplementedError


class InMemoryChunkStore(ChunkStore):
    """Process-local chunk store keyed by document id."""

    def __init__(self):
        self._chunks: Dict[str, List[Chunk]] = {}

    def add_chunks(self, chunks: List[Chunk]) -> None:
        """
        Add chunks produced by ingestion.

        Raises:
            ValueError: If chunks list is empty
        """
        if not chunks:
            raise ValueError("Chunks list cannot be empty")

        for chunk in chunks:
            self._chunks.setdefault(chunk.document_id, []).append(chunk)
        logger.info(f"Added {len(chunks)} chunks to in-memory store")

    def get_chunks_for_document(self, document_id: str) -> List[Chunk]:
        return list(self._chunks.get(document_id, []))

    def get_all_chunks(self) -> List[Chunk]:
        return [chunk for chunks in self._chunks.values() for chunk in chunks]


class SupabaseChunkStore(ChunkStore):
    """Chunk store backed by a Supabase table with a pgvector embedding column."""

    COLUMNS = "chunk_id, document_id, text, page_number, token_count, embedding"

    def __init__(
        self,
        supabase_url: Optional[str] = SUPABASE_URL,
        supabase_key: Optional[str] = SUPABASE_KEY,
        table_name: str = "document_chunks"
    ):
        """
        Initialize the chunk store with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            table_name: Name of the table holding chunks

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.table_name = table_name
        self.client: Client = create_client(supabase_url, supabase_key)

        logger.info(f"Initialized SupabaseChunkStore with table: {table_name}")

    def get_chunks_for_document(self, document_id: str) -> List[Chunk]:
        """
        Fetch every chunk of one document.

        Raises:
            RuntimeError: If database operation fails
        """
        try:
            response = (
                self.client.table(self.table_name)
                .select(self.COLUMNS)
                .eq("document_id", document_id)
                .execute()
            )
        except Exception as e:
            error_msg = f"Failed to fetch chunks for document {document_id}: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg) from e

        chunks = [self._row_to_chunk(row) for row in response.data or []]
        logger.debug(f"Fetched {len(chunks)} chunks for document {document_id}")
        return chunks

    def get_all_chunks(self) -> List[Chunk]:
        """
        Fetch every chunk in the table.

        Raises:
            RuntimeError: If database operation fails
        """
        try:
            response = self.client.table(self.table_name).select(self.COLUMNS).execute()
        except Exception as e:
            error_msg = f"Failed to fetch chunks: {str(e)}"
            logger.error(error_msg)
            raise RuntimeError(error_msg) from e

        return [self._row_to_chunk(row) for row in response.data or []]

    @staticmethod
    def _row_to_chunk(row: dict) -> Chunk:
        # pgvector columns come back as "[0.1,0.2,...]" strings through PostgREST
        raw_embedding = row.get("embedding")
        if isinstance(raw_embedding, str):
            raw_embedding = json.loads(raw_embedding)

        return Chunk(
            chunk_id=row["chunk_id"],
            document_id=row["document_id"],
            text=row["text"],
            page_number=row.get("page_number"),
            embedding=np.asarray(raw_embedding, dtype=float) if raw_embedding else None,
            tokens=row.get("token_count", 0) or 0,
        )
