import pydantic
import pytest

from conftest import FULL_RECORD
from record import AnalysisRecord, apply_schema_defaults, clamp_rating, unresolved_ratings


@pytest.mark.parametrize("raw, expected", [
    (0, 1),
    (15, 10),
    ("n/a", 5),
    (-3, 1),
    (7, 7),
    (7.6, 8),
    (6.5, 7),
    (7.5, 8),
    ("8.5", 9),
    (10**400, 10),
    (-(10**400), 1),
    ("8", 8),
    ("9/10", 9),
    (" 6.0 ", 6),
    (None, 5),
    (True, 5),
    ([7], 5),
    (float("nan"), 5),
])
def test_clamp_rating(raw, expected):
    assert clamp_rating(raw) == expected


def test_empty_input_gives_complete_defaults():
    record = apply_schema_defaults({})
    data = record.model_dump()
    assert data["industry_type"] == "Not Specified"
    assert data["pitch_clarity"] == 5
    assert data["company_overview"]["founded_on"] == "Not Specified"
    assert data["funding_history"] == {"rounds": []}
    assert data["key_questions"] == {"market_strategy": [], "user_relation": [], "regulatory_compliance": []}
    assert data["competitor_analysis"] == {"competitors": []}
    assert set(data["final_verdict"].values()) == {5}


def test_non_dict_input_is_treated_as_empty():
    assert apply_schema_defaults(["not", "a", "record"]) == AnalysisRecord()
    assert apply_schema_defaults(None) == AnalysisRecord()


def test_ratings_are_clamped_everywhere():
    record = apply_schema_defaults({
        "pitch_clarity": 0,
        "investment_score": "15",
        "final_verdict": {"innovation": "n/a", "risk_factor": 11, "sustainability": 3},
    })
    assert record.pitch_clarity == 1
    assert record.investment_score == 10
    assert record.final_verdict.innovation == 5
    assert record.final_verdict.risk_factor == 10
    assert record.final_verdict.sustainability == 3


def test_wrongly_shaped_sections_get_defaults():
    record = apply_schema_defaults({
        "company_overview": "Ledgerly, a fintech",
        "funding_history": {"rounds": [{"type": "Seed", "amount": 3000000}, "Series A", None]},
        "competitor_analysis": {"competitors": {"name": "BookCo"}},
        "market_analysis": None,
    })
    assert record.company_overview.company_name == "Not Specified"
    assert len(record.funding_history.rounds) == 1
    assert record.funding_history.rounds[0].amount == "3000000"
    assert record.funding_history.rounds[0].key_investors == []
    assert record.competitor_analysis.competitors == []
    assert record.market_analysis.market_size == "Not Specified"


def test_text_and_list_coercion():
    record = apply_schema_defaults({
        "industry_type": "   ",
        "market_position": None,
        "strengths": "Great team",
        "weaknesses": ["Burn rate", "", None, "  "],
        "proposed_deal_structure": {"board_seat": True, "anti_dilution_protection": False},
        "company_overview": {"key_offerings": ["Payments API", "Card issuing"]},
    })
    assert record.industry_type == "Not Specified"
    assert record.market_position == "Not Specified"
    assert record.strengths == ["Great team"]
    assert record.weaknesses == ["Burn rate"]
    assert record.proposed_deal_structure.board_seat == "Yes"
    assert record.proposed_deal_structure.anti_dilution_protection == "No"
    assert record.company_overview.key_offerings == "Payments API, Card issuing"


def test_unknown_keys_are_dropped():
    record = apply_schema_defaults({**FULL_RECORD, "expert_opinions": [{"name": "X"}]})
    assert "expert_opinions" not in record.model_dump()


def test_record_is_immutable():
    record = apply_schema_defaults(FULL_RECORD)
    with pytest.raises(pydantic.ValidationError):
        record.industry_type = "Biotech"


def test_unresolved_ratings_distinguishes_missing_from_average():
    data = {"pitch_clarity": 5, "investment_score": "unknown", "final_verdict": {"innovation": 5}}
    missing = unresolved_ratings(data)
    assert "pitch_clarity" not in missing
    assert "investment_score" in missing
    assert "final_verdict.innovation" not in missing
    assert "final_verdict.market_potential" in missing
    assert unresolved_ratings(FULL_RECORD) == []
    assert len(unresolved_ratings(None)) == 9


def test_huge_integer_ratings_are_clamped():
    record = apply_schema_defaults({"pitch_clarity": int("9" * 400), "final_verdict": {"risk_factor": -int("9" * 400)}})
    assert record.pitch_clarity == 10
    assert record.final_verdict.risk_factor == 1
    assert "pitch_clarity" not in unresolved_ratings({"pitch_clarity": int("9" * 400)})


def test_deeply_nested_text_is_cut_off():
    value = "x"
    for _ in range(1000):
        value = [value]
    nested = {"a": "b"}
    for _ in range(1000):
        nested = {"a": nested}

    record = apply_schema_defaults({"industry_type": value, "market_position": nested, "strengths": [value, "Team"]})
    assert record.industry_type == "Not Specified"
    assert record.market_position.startswith("a: a: ")
    assert record.strengths == ["Team"]
    assert apply_schema_defaults({"industry_type": [["Fintech"], ["Payments"]]}).industry_type == "Fintech, Payments"
