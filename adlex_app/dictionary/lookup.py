"""Similar-phrase lookup against an organization's NG/ALLOW dictionary."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select

from adlex_app.core.cache import TTLCache, text_hash
from adlex_app.storage.models import Dictionary

log = logging.getLogger("adlex")

EMBED_TEXT_LIMIT = 1000
SEARCH_TEXT_LIMIT = 500
LONG_TEXT_MAX_RESULTS = 30
MAX_RESULTS = 50
VECTOR_THRESHOLD = 0.75
LONG_TEXT_VECTOR_THRESHOLD = 0.7
NGRAM_THRESHOLD = 0.3
PHRASE_CACHE_TTL_S = 5 * 60
EMBEDDING_CACHE_TTL_S = 15 * 60


@dataclass(frozen=True)
class DictionaryCandidate:
    id: int
    phrase: str
    category: str
    similarity: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    dot = sum(a[i] * b[i] for i in range(n))
    na = math.sqrt(sum(x * x for x in a[:n]))
    nb = math.sqrt(sum(x * x for x in b[:n]))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def _bigrams(s: str) -> set:
    s = "".join(s.split())
    if len(s) < 2:
        return {s} if s else set()
    return {s[i : i + 2] for i in range(len(s) - 1)}


def phrase_similarity(phrase: str, text: str) -> float:
    """Share of the phrase's character bigrams that also occur in ``text``."""
    if not phrase:
        return 0.0
    if phrase in text:
        return 1.0
    grams = _bigrams(phrase)
    if not grams:
        return 0.0
    return len(grams & _bigrams(text)) / len(grams)


class DictionaryLookup:
    """Best-effort candidate search; never raises into the caller."""

    def __init__(self, Session, gateway, cache: Optional[TTLCache] = None):
        self.Session = Session
        self.gateway = gateway
        self.cache = cache or TTLCache(max_items=512, ttl_s=PHRASE_CACHE_TTL_S)

    async def _embedding(self, text: str, key: str) -> Optional[List[float]]:
        cached = self.cache.get(f"emb:{key}")
        if cached is not None:
            return cached
        embed_text = text[:EMBED_TEXT_LIMIT] if len(text) > EMBED_TEXT_LIMIT else text
        vector = await self.gateway.create_embedding(embed_text)
        self.cache.set(f"emb:{key}", vector, ttl_s=EMBEDDING_CACHE_TTL_S)
        return vector

    @staticmethod
    def _search_params(text: str):
        long_text = len(text) > SEARCH_TEXT_LIMIT
        search_text = text[:SEARCH_TEXT_LIMIT] if long_text else text
        vector_threshold = LONG_TEXT_VECTOR_THRESHOLD if long_text else VECTOR_THRESHOLD
        max_results = LONG_TEXT_MAX_RESULTS if long_text else MAX_RESULTS
        return search_text, vector_threshold, max_results

    async def search(self, text: str, organization_id: int) -> List[DictionaryCandidate]:
        if not text or not text.strip():
            return []
        key = text_hash(text)
        similar_key = f"similar:{organization_id}:{key}"
        cached = self.cache.get(similar_key)
        if cached is not None:
            return cached

        embedding = None
        try:
            embedding = await self._embedding(text, key)
        except Exception as exc:
            # lookup continues on text similarity alone
            log.warning("embedding for dictionary lookup failed: %s", exc)

        try:
            candidates = await asyncio.to_thread(self._rank, text, organization_id, embedding)
        except Exception:
            log.exception("dictionary lookup failed for organization %s", organization_id)
            return []
        self.cache.set(similar_key, candidates)
        return candidates

    def _rank(self, text: str, organization_id: int, embedding: Optional[List[float]]) -> List[DictionaryCandidate]:
        search_text, vector_threshold, max_results = self._search_params(text)
        with self.Session() as session:
            rows = session.execute(
                select(Dictionary).where(Dictionary.organization_id == organization_id)
            ).scalars().all()
            entries = [(d.id, d.phrase, d.category, d.vector) for d in rows]

        scored = []
        for entry_id, phrase, category, vector in entries:
            ngram = phrase_similarity(phrase, search_text)
            cosine = cosine_similarity(embedding, vector) if embedding and vector else 0.0
            if ngram < NGRAM_THRESHOLD and cosine < vector_threshold:
                continue
            scored.append(DictionaryCandidate(entry_id, phrase, category, round(max(ngram, cosine), 4)))
        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored[:max_results]
