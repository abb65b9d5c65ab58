import os
import sys

import fitz
import pytest
import pytesseract

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from pdf_text import OcrResult


FULL_RECORD = {
    "industry_type": "Fintech",
    "pitch_clarity": 7,
    "investment_score": 8,
    "market_position": "Challenger",
    "company_overview": {
        "company_name": "Ledgerly",
        "industry": "Financial Services",
        "business_model": "SaaS subscriptions for SMB bookkeeping",
        "key_offerings": "Automated reconciliation, cash-flow forecasting",
        "market_position": "Challenger",
        "founded_on": "2021-03-01",
    },
    "strengths": ["Experienced founders", "Strong early traction"],
    "weaknesses": ["Crowded market"],
    "funding_history": {
        "rounds": [
            {"type": "Pre-Seed", "amount": "$500K", "key_investors": ["Angel Collective"]},
            {"type": "Seed", "amount": "$3M", "key_investors": ["Northstar Ventures", "Fintech Fund"]},
        ]
    },
    "proposed_deal_structure": {
        "investment_amount": "$8M",
        "valuation_cap": "$40M",
        "equity_stake": "20%",
        "anti_dilution_protection": "Broad-based weighted average",
        "board_seat": "Yes",
        "liquidation_preference": "1x non-participating",
        "vesting_schedule": "4 years with 1 year cliff",
        "other_terms": "Pro-rata rights",
    },
    "key_questions": {
        "market_strategy": ["How will you reach mid-market customers?"],
        "user_relation": ["What is the monthly churn?"],
        "regulatory_compliance": ["Which licenses are required in the EU?"],
    },
    "final_verdict": {
        "product_viability": 8,
        "market_potential": 7,
        "sustainability": 6,
        "innovation": 7,
        "exit_potential": 6,
        "risk_factor": 5,
        "competitive_edge": 6,
    },
    "market_analysis": {
        "market_size": "$12B TAM",
        "growth_rate": "14% CAGR",
        "trends": ["Embedded finance"],
        "challenges": ["Incumbent accounting suites"],
    },
    "competitor_analysis": {
        "competitors": [
            {
                "name": "BookCo",
                "key_investors": ["Big Capital"],
                "amount_raised": "$120M",
                "market_position": "Leader",
                "strengths": "Brand recognition",
                "growth_rate": "20%",
                "business_model": "Subscriptions",
                "key_differentiator": "Accountant network",
            }
        ]
    },
}


class FakeOcrEngine:
    """Stands in for OcrEngine; texts maps a 1-based call number to the recognized text"""

    def __init__(self, texts=None, fail_on=()):
        self.texts = texts or {}
        self.fail_on = set(fail_on)
        self.opened = 0
        self.closed = 0
        self.active = False
        self.calls = 0
        self.active_during_calls = []

    def __enter__(self):
        self.opened += 1
        self.active = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed += 1
        self.active = False

    def recognize(self, image):
        self.calls += 1
        self.active_during_calls.append(self.active)
        if self.calls in self.fail_on:
            raise RuntimeError("tesseract crashed")
        return OcrResult(text=self.texts.get(self.calls, ""), confidence=0.9)


class FakeReasoningClient:
    def __init__(self, response="", error=None):
        self.response = response
        self.error = error
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


def build_pdf(*page_texts) -> bytes:
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def no_tesseract(monkeypatch):
    def missing():
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "get_tesseract_version", missing)
