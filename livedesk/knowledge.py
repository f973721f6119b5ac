"""
Knowledge-base search over a persistent ChromaDB collection.

Documents are expected to be indexed already (ingestion is handled elsewhere);
this module only embeds queries and ranks stored passages.
"""
import asyncio
import os
from typing import List, Optional

# Disable tokenizer parallelism to avoid warnings and potential conflicts
os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")

import chromadb
from loguru import logger
from sentence_transformers import SentenceTransformer

from livedesk import config
from livedesk.models import KnowledgePassage


class ChromaKnowledgeSearch:
    """Cosine-similarity search; similarity is ``1 - distance``, clipped to [0, 1]."""

    def __init__(
        self,
        collection: Optional["chromadb.Collection"] = None,
        embedding_model: Optional[SentenceTransformer] = None,
        persist_path: str = config.CHROMA_PERSIST_PATH,
        collection_name: str = config.CHROMA_COLLECTION_NAME,
        model_name: str = config.EMBEDDING_MODEL_NAME,
    ):
        if collection is None:
            os.makedirs(persist_path, exist_ok=True)
            client = chromadb.PersistentClient(path=persist_path)
            collection = client.get_or_create_collection(
                name=collection_name, metadata={"hnsw:space": "cosine"}
            )
            logger.info("ChromaDB collection '{}' ready with {} documents", collection_name, collection.count())
        if embedding_model is None:
            embedding_model = SentenceTransformer(model_name)
            logger.info("Embedding model {} loaded", model_name)
        self.collection = collection
        self.embedding_model = embedding_model

    def embed(self, text: str) -> List[float]:
        return self.embedding_model.encode(text).tolist()

    async def search(self, query: str, threshold: float, limit: int) -> List[KnowledgePassage]:
        return await asyncio.to_thread(self._search, query, threshold, limit)

    def _search(self, query: str, threshold: float, limit: int) -> List[KnowledgePassage]:
        results = self.collection.query(
            query_embeddings=[self.embed(query)],
            n_results=limit,
            include=["documents", "metadatas", "distances"],
        )
        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0] or [{}] * len(documents)
        distances = (results.get("distances") or [[]])[0]

        passages = []
        for content, metadata, distance in zip(documents, metadatas, distances):
            similarity = max(0.0, min(1.0, 1.0 - float(distance)))
            if similarity >= threshold:
                passages.append(KnowledgePassage(content=content, similarity=similarity, metadata=metadata or {}))
        passages.sort(key=lambda passage: passage.similarity, reverse=True)
        logger.debug("Knowledge search returned {} passages at threshold {:.2f}", len(passages), threshold)
        return passages
