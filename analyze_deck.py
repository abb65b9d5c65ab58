import argparse
import dataclasses
import json
import logging
import mimetypes
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from functions import AnalysisError, GeminiReasoningClient, ReasoningClient, analyze_document, validate_upload
from normalizer import NormalizedAnalysis
from pdf_text import InvalidDocumentError
from settings import Settings, load_settings

logger = logging.getLogger(__name__)


def analyze_pdf_file(path, reasoning_client: ReasoningClient, settings: Optional[Settings] = None,
                     ocr_engine=None) -> NormalizedAnalysis:
    """
    Analyzes one pitch deck stored on disk, sequentially and with a single client.

    :param path: path of the PDF
    :param reasoning_client: ReasoningClient
    :param settings: Settings, defaults are used when omitted
    :param ocr_engine: optional OCR engine
    :return: NormalizedAnalysis
    """
    settings = settings or Settings()
    path = Path(path)
    doc_data = path.read_bytes()
    validate_upload(doc_data, mimetypes.guess_type(path.name)[0], settings.max_pdf_bytes)
    return analyze_document(doc_data, reasoning_client, ocr_engine=ocr_engine, settings=settings)


def to_output(result: NormalizedAnalysis, document: str, analyzed_at: datetime) -> dict:
    """
    The record as handed to storage: the analysis plus when and from what it was produced
    """
    return {
        "document": document,
        "analyzed_at": analyzed_at.isoformat(),
        "repair_tier": int(result.tier),
        "confidence": result.confidence,
        "unresolved_ratings": list(result.unresolved_ratings),
        "analysis": result.record.model_dump(),
    }


def main(argv=None, reasoning_client: Optional[ReasoningClient] = None) -> int:
    parser = argparse.ArgumentParser(description="Analyze a single pitch deck PDF")
    parser.add_argument("path", help="pitch deck PDF")
    parser.add_argument("--model", help="Gemini model name")
    parser.add_argument("-o", "--output", help="write the JSON result to this file instead of stdout")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = load_settings()
    if args.model:
        settings = dataclasses.replace(settings, model_name=args.model)

    try:
        if reasoning_client is None:
            reasoning_client = GeminiReasoningClient.from_settings(settings)
        result = analyze_pdf_file(args.path, reasoning_client, settings)
    except (AnalysisError, InvalidDocumentError, OSError) as e:
        logger.error("Analysis failed for %s: %s", args.path, e)
        return 1

    output = json.dumps(to_output(result, args.path, datetime.now(timezone.utc)), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(output + "\n", encoding="utf-8")
        logger.info("Analysis written to %s", args.output)
    else:
        sys.stdout.write(output + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
