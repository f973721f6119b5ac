from unittest.mock import MagicMock

import pytest

from livedesk.knowledge import ChromaKnowledgeSearch


@pytest.fixture
def collection():
    collection = MagicMock()
    collection.query.return_value = {
        "documents": [["Parking is free for staff.", "Annual leave is 20 days.", "Unrelated text."]],
        "metadatas": [[{"source": "a.pdf"}, {"source": "b.pdf"}, None]],
        "distances": [[0.45, 0.2, 0.9]],
    }
    return collection


@pytest.fixture
def embedder():
    model = MagicMock()
    model.encode.return_value.tolist.return_value = [0.1, 0.2, 0.3]
    return model


@pytest.mark.asyncio
async def test_search_ranks_and_filters_by_similarity(collection, embedder):
    search = ChromaKnowledgeSearch(collection=collection, embedding_model=embedder)

    passages = await search.search("how much leave", threshold=0.4, limit=5)

    assert [p.content for p in passages] == ["Annual leave is 20 days.", "Parking is free for staff."]
    assert passages[0].similarity == pytest.approx(0.8)
    assert passages[0].metadata == {"source": "b.pdf"}
    collection.query.assert_called_once_with(
        query_embeddings=[[0.1, 0.2, 0.3]],
        n_results=5,
        include=["documents", "metadatas", "distances"],
    )


@pytest.mark.asyncio
async def test_empty_collection(collection, embedder):
    collection.query.return_value = {"documents": [[]], "metadatas": [[]], "distances": [[]]}
    search = ChromaKnowledgeSearch(collection=collection, embedding_model=embedder)

    assert await search.search("anything", threshold=0.2, limit=3) == []
