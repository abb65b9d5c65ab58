"""
The analysis record returned for every pitch deck.

Each section fills itself in from whatever it is given: missing sections, lists and strings get their
defaults, and every rating ends up as an integer between 1 and 10. A record can therefore be built from any
partially recovered model output and still satisfy the full schema.
"""
import math
import re
from typing import Annotated, Any, List

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from constants import DEFAULT_RATING, DEFAULT_TEXT, MAX_RATING, MIN_RATING, RATING_FIELDS, VERDICT_FIELDS

_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")
_MAX_TEXT_DEPTH = 10


def parse_rating(value: Any):
    """Returns the numeric value of a rating, or None if it has none."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            number = math.inf if value > 0 else -math.inf
    elif isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if not match:
            return None
        number = float(match.group(1))
    else:
        return None
    if math.isnan(number):
        return None
    return number


def clamp_rating(value: Any) -> int:
    """
    Normalizes a rating to an integer in [1, 10].

    Values below 1 become 1, above 10 become 10, fractions are rounded half up and anything non-numeric
    becomes 5.
    """
    number = parse_rating(value)
    if number is None:
        return DEFAULT_RATING
    if number < MIN_RATING:
        return MIN_RATING
    if number > MAX_RATING:
        return MAX_RATING
    return math.floor(number + 0.5)


def _join_text(value: Any, depth: int) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if value is None:
        return ""
    if isinstance(value, (list, tuple, dict)) and depth >= _MAX_TEXT_DEPTH:
        # deeper structure is dropped rather than walked
        return ""
    if isinstance(value, (list, tuple)):
        parts = (_join_text(v, depth + 1) for v in value if not (v is None or v == ""))
        return ", ".join(part for part in parts if part)
    if isinstance(value, dict):
        return ", ".join(f"{k}: {_join_text(v, depth + 1) or DEFAULT_TEXT}" for k, v in value.items())
    return str(value).strip()


def coerce_text(value: Any) -> str:
    text = _join_text(value, 0).strip()
    return text if text else DEFAULT_TEXT


def coerce_text_list(value: Any) -> list:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    items = []
    for item in value:
        if item is None:
            continue
        text = coerce_text(item)
        if text != DEFAULT_TEXT or (isinstance(item, str) and item.strip() == DEFAULT_TEXT):
            items.append(text)
    return items


def coerce_object_list(value: Any) -> list:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, dict)]


Text = Annotated[str, BeforeValidator(coerce_text)]
TextList = Annotated[List[str], BeforeValidator(coerce_text_list)]
Rating = Annotated[int, BeforeValidator(clamp_rating)]


class Section(BaseModel):
    """Base for every part of the record: ignores unknown keys and treats non-objects as empty."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _require_mapping(cls, data):
        if isinstance(data, BaseModel):
            return data.model_dump()
        if not isinstance(data, dict):
            return {}
        return data


class CompanyOverview(Section):
    company_name: Text = DEFAULT_TEXT
    industry: Text = DEFAULT_TEXT
    business_model: Text = DEFAULT_TEXT
    key_offerings: Text = DEFAULT_TEXT
    market_position: Text = DEFAULT_TEXT
    founded_on: Text = DEFAULT_TEXT


class FundingRound(Section):
    type: Text = DEFAULT_TEXT
    amount: Text = DEFAULT_TEXT
    key_investors: TextList = Field(default_factory=list)


class FundingHistory(Section):
    rounds: Annotated[List[FundingRound], BeforeValidator(coerce_object_list)] = Field(default_factory=list)


class ProposedDealStructure(Section):
    investment_amount: Text = DEFAULT_TEXT
    valuation_cap: Text = DEFAULT_TEXT
    equity_stake: Text = DEFAULT_TEXT
    anti_dilution_protection: Text = DEFAULT_TEXT
    board_seat: Text = DEFAULT_TEXT
    liquidation_preference: Text = DEFAULT_TEXT
    vesting_schedule: Text = DEFAULT_TEXT
    other_terms: Text = DEFAULT_TEXT


class KeyQuestions(Section):
    market_strategy: TextList = Field(default_factory=list)
    user_relation: TextList = Field(default_factory=list)
    regulatory_compliance: TextList = Field(default_factory=list)


class FinalVerdict(Section):
    product_viability: Rating = DEFAULT_RATING
    market_potential: Rating = DEFAULT_RATING
    sustainability: Rating = DEFAULT_RATING
    innovation: Rating = DEFAULT_RATING
    exit_potential: Rating = DEFAULT_RATING
    risk_factor: Rating = DEFAULT_RATING
    competitive_edge: Rating = DEFAULT_RATING


class MarketAnalysis(Section):
    market_size: Text = DEFAULT_TEXT
    growth_rate: Text = DEFAULT_TEXT
    trends: TextList = Field(default_factory=list)
    challenges: TextList = Field(default_factory=list)


class Competitor(Section):
    name: Text = DEFAULT_TEXT
    key_investors: TextList = Field(default_factory=list)
    amount_raised: Text = DEFAULT_TEXT
    market_position: Text = DEFAULT_TEXT
    strengths: Text = DEFAULT_TEXT
    growth_rate: Text = DEFAULT_TEXT
    business_model: Text = DEFAULT_TEXT
    key_differentiator: Text = DEFAULT_TEXT


class CompetitorAnalysis(Section):
    competitors: Annotated[List[Competitor], BeforeValidator(coerce_object_list)] = Field(default_factory=list)


class AnalysisRecord(Section):
    industry_type: Text = DEFAULT_TEXT
    pitch_clarity: Rating = DEFAULT_RATING
    investment_score: Rating = DEFAULT_RATING
    market_position: Text = DEFAULT_TEXT
    company_overview: CompanyOverview = Field(default_factory=CompanyOverview)
    strengths: TextList = Field(default_factory=list)
    weaknesses: TextList = Field(default_factory=list)
    funding_history: FundingHistory = Field(default_factory=FundingHistory)
    proposed_deal_structure: ProposedDealStructure = Field(default_factory=ProposedDealStructure)
    key_questions: KeyQuestions = Field(default_factory=KeyQuestions)
    final_verdict: FinalVerdict = Field(default_factory=FinalVerdict)
    market_analysis: MarketAnalysis = Field(default_factory=MarketAnalysis)
    competitor_analysis: CompetitorAnalysis = Field(default_factory=CompetitorAnalysis)

    def to_dict(self) -> dict:
        return self.model_dump()


def unresolved_ratings(data: Any) -> list:
    """
    Lists the ratings in raw model output that carry no usable number.

    These are the ratings that end up at the midpoint default, so callers can tell an average score from a
    missing one.

    :param data: parsed (possibly partial) model output
    :return: dotted field paths, e.g. ["pitch_clarity", "final_verdict.innovation"]
    """
    if not isinstance(data, dict):
        data = {}
    verdict = data.get("final_verdict")
    if not isinstance(verdict, dict):
        verdict = {}

    missing = [name for name in RATING_FIELDS if parse_rating(data.get(name)) is None]
    missing += [f"final_verdict.{name}" for name in VERDICT_FIELDS if parse_rating(verdict.get(name)) is None]
    return missing


def apply_schema_defaults(data: Any) -> AnalysisRecord:
    """
    Builds a complete AnalysisRecord from parsed model output, filling every missing field with its default
    and clamping every rating to [1, 10].

    :param data: dict (possibly partial), or anything else which is treated as empty
    :return: AnalysisRecord
    """
    return AnalysisRecord.model_validate(data if isinstance(data, dict) else {})
