DEFAULT_TEXT = "Not Specified"
DEFAULT_RATING = 5
MIN_RATING = 1
MAX_RATING = 10

# Magnification used when rasterizing pages for OCR (2x resolves small print)
RENDER_SCALE = 2.0

PDF_MIME_TYPE = "application/pdf"
MAX_PDF_BYTES = 10 * 1024 * 1024

PAGE_MARKER = "--- PAGE {index} ---"
OCR_MARKER = "--- OCR TEXT FROM PAGE {index} ---"

RATING_FIELDS = ("pitch_clarity", "investment_score")
VERDICT_FIELDS = (
    "product_viability",
    "market_potential",
    "sustainability",
    "innovation",
    "exit_potential",
    "risk_factor",
    "competitive_edge",
)

analysis_schema = """
{
  "industry_type": "string (primary industry or sector)",
  "pitch_clarity": "integer 1-10 (how clearly the deck communicates the business)",
  "investment_score": "integer 1-10 (overall attractiveness as an investment)",
  "market_position": "string (Leader, Challenger, Niche Player or Emerging)",
  "company_overview": {
    "company_name": "string",
    "industry": "string",
    "business_model": "string (how the company makes money)",
    "key_offerings": "string (main products or services)",
    "market_position": "string",
    "founded_on": "string (YYYY-MM-DD, YYYY or 'Not Specified')"
  },
  "strengths": ["string"],
  "weaknesses": ["string"],
  "funding_history": {
    "rounds": [
      {
        "type": "string (Pre-Seed, Seed, Series A, ...)",
        "amount": "string (with currency)",
        "key_investors": ["string"]
      }
    ]
  },
  "proposed_deal_structure": {
    "investment_amount": "string",
    "valuation_cap": "string",
    "equity_stake": "string",
    "anti_dilution_protection": "string",
    "board_seat": "string",
    "liquidation_preference": "string",
    "vesting_schedule": "string",
    "other_terms": "string"
  },
  "key_questions": {
    "market_strategy": ["string (question an investor should ask)"],
    "user_relation": ["string"],
    "regulatory_compliance": ["string"]
  },
  "final_verdict": {
    "product_viability": "integer 1-10",
    "market_potential": "integer 1-10",
    "sustainability": "integer 1-10",
    "innovation": "integer 1-10",
    "exit_potential": "integer 1-10",
    "risk_factor": "integer 1-10 (10 = lowest risk)",
    "competitive_edge": "integer 1-10"
  },
  "market_analysis": {
    "market_size": "string (TAM/SAM/SOM with currency where available)",
    "growth_rate": "string (CAGR or yearly growth)",
    "trends": ["string"],
    "challenges": ["string"]
  },
  "competitor_analysis": {
    "competitors": [
      {
        "name": "string",
        "key_investors": ["string"],
        "amount_raised": "string",
        "market_position": "string",
        "strengths": "string",
        "growth_rate": "string",
        "business_model": "string",
        "key_differentiator": "string"
      }
    ]
  }
}
"""

analysis_prompt = """
Analyze the following pitch deck and return JSON strictly following this schema:
{schema}
Extraction Rules:
1. Document Structure:
   - Every page starts with a "--- PAGE n ---" marker
   - "--- OCR TEXT FROM PAGE n ---" sections hold text recognized from images on that page
   - The same fact may appear in both the page text and its OCR section; treat it as one fact, not as conflicting evidence
   - The text includes both regular PDF text and OCR-extracted text from images. Analyze ALL content thoroughly

2. Ratings:
   - Every rating is an integer from 1 to 10
   - Do not leave ratings empty; estimate from the available evidence

3. Missing Information:
   - Use "Not Specified" for text that is not in the deck and cannot be reasonably inferred
   - Use an empty list for lists with no entries
   - Identify at least 3 competitors where the market allows it

4. Key Questions:
   - Write open questions an investor should raise with the founders, 2-4 per group

Return ONLY the JSON object. No explanations, no markdown code fences, no trailing commas.

Pitch deck text:
{document_text}
"""

sys_instructions = """
Role: Expert Venture Capital Analyst reviewing startup pitch decks

Core Functions:
1. Company Profiling
   - Industry, business model, offerings and founding date from the deck itself
   - Market position as one of: "Leader", "Challenger", "Niche Player", "Emerging"

2. Investment Assessment
   - Strengths and weaknesses backed by content in the deck
   - Funding rounds in chronological order, amounts with currency
   - Proposed deal terms as stated, otherwise typical terms for the stage

3. Scoring Discipline
   - All numerical ratings on a scale of 1-10
   - 5 means average, not unknown; justify extremes with evidence

Output Enforcement:
- A single JSON object matching the requested schema
- Exact field names, no additional keys
- Dates in YYYY-MM-DD format
"""
