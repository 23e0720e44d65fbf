import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from models.buyer_request import BuyerRequest
from models.supplier import Supplier
from services.matching import (
    OpenAIMatchScorer,
    RuleBasedMatchScorer,
    build_preview,
    build_supplier_entries,
    get_openai_client,
    rank_suppliers,
)


def _request():
    return BuyerRequest(
        id="req-1",
        email="buyer@example.com",
        category="Packaging",
        description="Need custom corrugated boxes printed with our logo",
        location="Austin, TX",
        requirements="FSC certified material",
    )


def _supplier(supplier_id, **fields):
    values = {
        "id": supplier_id,
        "name": "Lone Star Packaging",
        "email": "sales@lonestarpack.example",
        "category": "packaging",
        "description": "custom corrugated boxes and printed mailers",
        "location": "Austin, TX",
        "certifications": ["FSC"],
        "capabilities": ["printing"],
        "lead_time": "2-3 weeks",
    }
    values.update(fields)
    return Supplier(**values)


def _chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def test_rule_based_score_components():
    match = RuleBasedMatchScorer().score_sync(_request(), _supplier("sup-1"))

    # category 40 + location 20 + four keywords 20 + certification 10
    assert match.score == 90
    assert "Category match" in match.factors
    assert "Location match" in match.factors
    assert "4 keyword matches" in match.factors
    assert "Certification match" in match.factors
    assert match.explanation.startswith("Excellent match")
    assert not match.ai_generated


def test_rule_based_partial_location_and_no_match():
    scorer = RuleBasedMatchScorer()
    partial = scorer.score_sync(_request(), _supplier("sup-2", location="Austin, Texas metro", certifications=[]))
    assert "Partial location match" in partial.factors

    unrelated = scorer.score_sync(
        _request(),
        _supplier("sup-3", category="textiles", description="woven fabric", location="Lyon, France",
                  certifications=[], capabilities=[]),
    )
    assert unrelated.score == 0


@pytest.mark.asyncio
async def test_rank_suppliers_drops_zero_scores_and_limits():
    suppliers = [
        _supplier("sup-1"),
        _supplier("sup-2", name="Hill Country Boxes", location="Dallas, TX", certifications=[]),
        _supplier("sup-3", category="textiles", description="woven fabric", location="Lyon, France",
                  certifications=[], capabilities=[]),
    ]

    result = await rank_suppliers(_request(), suppliers, RuleBasedMatchScorer(), top_n=5)

    assert [item.supplier.id for item in result.ranked] == ["sup-1", "sup-2"]
    assert result.top.supplier.id == "sup-1"
    expected_average = round(sum(item.match.score for item in result.ranked) / 2)
    assert result.average_score == expected_average

    limited = await rank_suppliers(_request(), suppliers, RuleBasedMatchScorer(), top_n=1)
    assert len(limited.ranked) == 1


@pytest.mark.asyncio
async def test_preview_hides_contact_details():
    result = await rank_suppliers(_request(), [_supplier("sup-1")], RuleBasedMatchScorer())
    preview = build_preview(_request(), result)

    assert preview["matched_count"] == 1
    assert preview["match_score"] == 90
    assert preview["preview_supplier"] == {"name": "Lone Star Packaging", "location": "Austin, TX", "category": "packaging"}
    assert "email" not in json.dumps(preview)

    entries = build_supplier_entries(result)
    assert entries[0]["supplier_id"] == "sup-1"
    assert entries[0]["ranking"] == 1


@pytest.mark.asyncio
async def test_openai_scorer_parses_json_and_clamps():
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response(
        '```json\n{"score": 150, "factors": ["Category"], "whyMatch": "Strong fit.", "strengths": ["FSC"], "concerns": []}\n```'
    )
    scorer = OpenAIMatchScorer(client, "gpt-4o-mini")

    match = await scorer.score(_request(), _supplier("sup-1"))

    assert match.score == 100
    assert match.ai_generated
    assert match.explanation == "Strong fit."
    assert match.strengths == ["FSC"]


@pytest.mark.asyncio
async def test_openai_scorer_falls_back_after_two_failures():
    client = MagicMock()
    client.chat.completions.create.side_effect = RuntimeError("upstream timeout")
    scorer = OpenAIMatchScorer(client, "gpt-4o-mini")

    match = await scorer.score(_request(), _supplier("sup-1"))

    assert client.chat.completions.create.call_count == 2
    assert match.score == 90
    assert not match.ai_generated


def test_placeholder_openai_keys_disable_client():
    assert get_openai_client("") is None
    assert get_openai_client("your_openai_key") is None
    assert get_openai_client("test-key") is None
