"""Supplier scoring for buyer requests (rule-based with optional OpenAI scoring)."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI

from config import settings
from models.buyer_request import BuyerRequest
from models.supplier import Supplier

logger = logging.getLogger(__name__)


@dataclass
class MatchScore:
    score: int
    factors: List[str] = field(default_factory=list)
    explanation: str = ""
    strengths: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)
    ai_generated: bool = False


@dataclass
class ScoredSupplier:
    supplier: Supplier
    match: MatchScore


@dataclass
class MatchResult:
    ranked: List[ScoredSupplier]
    average_score: int

    @property
    def top(self) -> Optional[ScoredSupplier]:
        return self.ranked[0] if self.ranked else None


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def _lower(value: Any) -> str:
    return str(value or "").strip().lower()


def template_explanation(supplier: Supplier, score: int, factors: Sequence[str]) -> str:
    parts: List[str] = []
    if score >= 80:
        parts.append("Excellent match with strong alignment across multiple criteria.")
    elif score >= 60:
        parts.append("Good match with solid compatibility in key areas.")
    else:
        parts.append("Moderate match with some relevant capabilities.")
    if "Category match" in factors:
        parts.append(f"Specializes in {supplier.category}, directly matching your needs.")
    if supplier.certifications:
        parts.append(f"Certified with {', '.join(supplier.certifications)}.")
    if supplier.lead_time:
        parts.append(f"Lead time: {supplier.lead_time}.")
    return " ".join(parts)


class RuleBasedMatchScorer:
    """Deterministic scorer: category 40, location 20 (10 partial), keywords up to 30, certifications 10."""

    name = "rule_based"

    def score_sync(self, request: BuyerRequest, supplier: Supplier) -> MatchScore:
        score = 0
        factors: List[str] = []

        if _lower(request.category) and _lower(request.category) == _lower(supplier.category):
            score += 40
            factors.append("Category match")

        request_location = _lower(request.location)
        supplier_location = _lower(supplier.location)
        if request_location and supplier_location:
            if request_location in supplier_location or supplier_location in request_location:
                score += 20
                factors.append("Location match")
            elif any(len(word) > 3 and word in supplier_location for word in request_location.split(" ")):
                score += 10
                factors.append("Partial location match")

        request_words = f"{request.description or ''} {request.requirements or ''}".lower().split()
        supplier_words = set(
            f"{supplier.description or ''} {' '.join(supplier.capabilities or [])}".lower().split()
        )
        matching_words = [word for word in request_words if len(word) > 4 and word in supplier_words]
        if matching_words:
            score += min(30, len(matching_words) * 5)
            factors.append(f"{len(matching_words)} keyword matches")

        requirements = _lower(request.requirements)
        if requirements and any(_lower(cert) and _lower(cert) in requirements for cert in supplier.certifications or []):
            score += 10
            factors.append("Certification match")

        score = min(100, score)
        return MatchScore(
            score=score,
            factors=factors,
            explanation=template_explanation(supplier, score, factors),
        )

    async def score(self, request: BuyerRequest, supplier: Supplier) -> MatchScore:
        return self.score_sync(request, supplier)


class OpenAIMatchScorer:
    """Chat-completion scorer; retries once, then falls back to rule-based scoring."""

    name = "openai"

    def __init__(self, client: OpenAI, model: str, fallback: Optional[RuleBasedMatchScorer] = None):
        self._client = client
        self._model = model
        self._fallback = fallback or RuleBasedMatchScorer()

    def _prompt(self, request: BuyerRequest, supplier: Supplier) -> str:
        return (
            "Analyze how well this supplier matches the buyer's request.\n\n"
            "BUYER REQUEST:\n"
            f"- Category: {request.category}\n"
            f"- Description: {request.description}\n"
            f"- Budget: {request.budget or 'Not specified'}\n"
            f"- Quantity: {request.quantity or 'Not specified'}\n"
            f"- Timeline: {request.timeline or 'Not specified'}\n"
            f"- Location: {request.location or 'Not specified'}\n"
            f"- Requirements: {request.requirements or 'None'}\n\n"
            "SUPPLIER PROFILE:\n"
            f"- Category: {supplier.category}\n"
            f"- Description: {supplier.description}\n"
            f"- Location: {supplier.location}\n"
            f"- Certifications: {', '.join(supplier.certifications or []) or 'None'}\n"
            f"- Capabilities: {', '.join(supplier.capabilities or []) or 'None'}\n"
            f"- Lead Time: {supplier.lead_time or 'Not specified'}\n"
            f"- Min Order Quantity: {supplier.min_order_quantity or 'Not specified'}\n\n"
            'Return a JSON object with "score" (0-100), "factors" (list of strings), '
            '"whyMatch" (2-3 sentences), "strengths" (list) and "concerns" (list).'
        )

    def _complete(self, request: BuyerRequest, supplier: Supplier) -> MatchScore:
        response = self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": "You are an expert supplier matching system. Return JSON only."},
                {"role": "user", "content": self._prompt(request, supplier)},
            ],
            response_format={"type": "json_object"},
            temperature=0.3,
            max_tokens=500,
        )
        raw_content = response.choices[0].message.content
        parsed = json.loads(re.sub(r"```(?:json)?", "", raw_content or "{}").strip())
        if not isinstance(parsed, dict):
            raise ValueError("Scorer response is not an object")
        score = int(max(0, min(100, float(parsed.get("score") or 0))))
        factors = [str(item) for item in parsed.get("factors") or []]
        return MatchScore(
            score=score,
            factors=factors,
            explanation=str(parsed.get("whyMatch") or "") or template_explanation(supplier, score, factors),
            strengths=[str(item) for item in parsed.get("strengths") or []],
            concerns=[str(item) for item in parsed.get("concerns") or []],
            ai_generated=True,
        )

    async def score(self, request: BuyerRequest, supplier: Supplier) -> MatchScore:
        for attempt in (1, 2):
            try:
                return await asyncio.to_thread(self._complete, request, supplier)
            except Exception as exc:
                logger.warning("AI match scoring failed (attempt %d) for supplier %s: %s", attempt, supplier.id, exc)
        logger.warning("AI match scoring failed twice; using rule-based score for supplier %s", supplier.id)
        return await self._fallback.score(request, supplier)


def get_match_scorer():
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        return RuleBasedMatchScorer()
    return OpenAIMatchScorer(client, settings.OPENAI_MATCH_MODEL)


def summarize_request(request: BuyerRequest) -> str:
    if request.description:
        return request.description[:200]
    return f"Request in {request.category} category"


async def rank_suppliers(
    request: BuyerRequest,
    suppliers: Sequence[Supplier],
    scorer=None,
    top_n: Optional[int] = None,
) -> MatchResult:
    """Score every supplier, keep positive scores and return the best `top_n`."""
    active_scorer = scorer or RuleBasedMatchScorer()
    limit = max(int(top_n or settings.MATCH_TOP_N), 1)

    scored: List[ScoredSupplier] = []
    for supplier in suppliers:
        match = await active_scorer.score(request, supplier)
        if match.score > 0:
            scored.append(ScoredSupplier(supplier=supplier, match=match))

    scored.sort(key=lambda item: item.match.score, reverse=True)
    ranked = scored[:limit]
    average = round(sum(item.match.score for item in ranked) / len(ranked)) if ranked else 0
    return MatchResult(ranked=ranked, average_score=int(average))


def build_preview(request: BuyerRequest, result: MatchResult) -> Dict[str, Any]:
    """Public teaser: counts and the top supplier without contact details."""
    top = result.top
    return {
        "summary": summarize_request(request),
        "category": request.category,
        "matched_count": len(result.ranked),
        "match_score": result.average_score,
        "preview_supplier": {
            "name": top.supplier.name,
            "location": top.supplier.location,
            "category": top.supplier.category,
        }
        if top
        else None,
    }


def build_supplier_entries(result: MatchResult) -> List[Dict[str, Any]]:
    return [
        {
            "supplier_id": item.supplier.id,
            "ranking": index + 1,
            "match_score": item.match.score,
            "factors": item.match.factors,
            "explanation": item.match.explanation,
            "strengths": item.match.strengths,
            "concerns": item.match.concerns,
            "ai_generated": item.match.ai_generated,
        }
        for index, item in enumerate(result.ranked)
    ]
