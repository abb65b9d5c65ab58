import argparse
import concurrent.futures
import dataclasses
import io
import json
import logging
import mimetypes
import os
import re
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol, Union

import httpx
import pandas
import pikepdf
from google import genai
from google.genai import errors
from google.genai.types import GenerateContentConfig

from constants import analysis_prompt, analysis_schema
from normalizer import NormalizedAnalysis, normalize_response
from pdf_text import DocumentText, InvalidDocumentError, extract_document_text
from settings import Settings, load_settings

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Raised when the reasoning backend fails; the deck could not be analyzed"""


class ReasoningClient(Protocol):
    def generate(self, prompt: str) -> str:
        ...


def initialize_clients(settings: Settings) -> list:
    """
    Creates one Gemini client per configured API key

    :param settings: Settings
    :return: List of genai.Client objects
    """
    clients = [genai.Client(api_key=key) for key in settings.api_keys]
    logger.info("Initialized %d API clients", len(clients))
    return clients


class ThreadSafeRateLimiter:
    """
    Thread-safe rate limiter for the Gemini API that enforces limits of:
    - 15 requests per minute
    - 1500 requests per day
    Per API key
    """

    def __init__(self, requests_per_minute=15, requests_per_day=1500):
        self.requests_per_minute = requests_per_minute
        self.requests_per_day = requests_per_day
        self.minute_requests = deque()
        self.day_requests = deque()
        self.lock = threading.Lock()
        logger.debug("Rate limiter initialized with %d requests/minute and %d requests/day",
                     requests_per_minute, requests_per_day)

    def can_make_request(self, now: Optional[datetime] = None):
        """Check if a request can be made based on rate limits"""
        with self.lock:
            current_time = now or datetime.now()

            # Clean up expired timestamps
            self._cleanup_timestamps(current_time)

            minute_ok = len(self.minute_requests) < self.requests_per_minute
            day_ok = len(self.day_requests) < self.requests_per_day

            if not minute_ok:
                logger.debug("Rate limit: Minute limit reached (%d/%d)", len(self.minute_requests),
                             self.requests_per_minute)
            if not day_ok:
                logger.debug("Rate limit: Daily limit reached (%d/%d)", len(self.day_requests),
                             self.requests_per_day)

            return minute_ok and day_ok

    def record_request(self, now: Optional[datetime] = None):
        """Record a request timestamp"""
        with self.lock:
            current_time = now or datetime.now()
            self.minute_requests.append(current_time)
            self.day_requests.append(current_time)
            logger.debug("Request recorded. Minute: %d/%d, Day: %d/%d", len(self.minute_requests),
                         self.requests_per_minute, len(self.day_requests), self.requests_per_day)

    def _cleanup_timestamps(self, current_time):
        """Remove timestamps that are outside the time windows"""
        minute_cutoff = current_time - timedelta(minutes=1)
        while self.minute_requests and self.minute_requests[0] < minute_cutoff:
            self.minute_requests.popleft()

        day_cutoff = current_time - timedelta(days=1)
        while self.day_requests and self.day_requests[0] < day_cutoff:
            self.day_requests.popleft()


class ClientManager:
    """
    Manages a pool of API clients with their own rate limiters
    """

    def __init__(self, clients, requests_per_minute=15, requests_per_day=1500, poll_interval=1.0):
        if not clients:
            raise ValueError("ClientManager needs at least one client")
        self.clients = clients
        self.rate_limiters = [ThreadSafeRateLimiter(requests_per_minute, requests_per_day) for _ in clients]
        self.current_index = 0
        self.poll_interval = poll_interval
        self.lock = threading.Lock()

    def get_next_available_client(self):
        """
        Returns the next available client that can make a request, waiting while all of them are rate limited

        :return: (client, rate_limiter, index)
        """
        wait_reported = False

        while True:
            with self.lock:
                # Check all clients in a round-robin fashion
                for _ in range(len(self.clients)):
                    idx = self.current_index
                    self.current_index = (self.current_index + 1) % len(self.clients)

                    if self.rate_limiters[idx].can_make_request():
                        return self.clients[idx], self.rate_limiters[idx], idx

            if not wait_reported:
                logger.info("All API keys are rate limited. Waiting...")
                wait_reported = True
            time.sleep(self.poll_interval)


class GeminiReasoningClient:
    """
    Sends analysis prompts to a Gemini model, one request per prompt, through a rate limited client pool
    """

    def __init__(self, client_manager: ClientManager, model_name: str = "gemini-2.0-flash",
                 system_instructions: str = "", temperature: float = 0.7, max_output_tokens: int = 8192):
        self.client_manager = client_manager
        self.model_name = model_name
        self.system_instructions = system_instructions
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiReasoningClient":
        if not settings.api_keys:
            raise AnalysisError("No Gemini API key configured (set GOOGLE_API in .env)")
        client_manager = ClientManager(initialize_clients(settings), settings.requests_per_minute,
                                       settings.requests_per_day)
        return cls(client_manager, settings.model_name, settings.system_instructions, settings.temperature,
                   settings.max_output_tokens)

    def generate(self, prompt: str) -> str:
        """
        Returns the raw text generated for the prompt

        :param prompt: str
        :return: str
        """
        client, rate_limiter, client_idx = self.client_manager.get_next_available_client()
        logger.info("Requesting analysis from %s using client %d", self.model_name, client_idx + 1)

        try:
            response = client.models.generate_content(
                model=self.model_name,
                contents=[prompt],
                config=GenerateContentConfig(
                    system_instruction=[self.system_instructions] if self.system_instructions else None,
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
        except errors.APIError as e:
            raise AnalysisError(f"Gemini request failed with status {e.code}: {e.message}") from e
        except httpx.HTTPError as e:
            raise AnalysisError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            # UnknownApiResponseError and other unparseable responses
            raise AnalysisError(f"Gemini returned an unusable response: {e}") from e
        finally:
            rate_limiter.record_request()

        text = response.text
        if not text or not text.strip():
            raise AnalysisError("Gemini returned no content")
        logger.debug("Received %d characters from %s", len(text), self.model_name)
        return text


def build_prompt(document: Union[DocumentText, str]) -> str:
    """
    Renders the extracted deck text into the analysis prompt

    :param document: DocumentText or already assembled text
    :return: str
    """
    text = document.full_text if isinstance(document, DocumentText) else document
    return analysis_prompt.format(schema=analysis_schema.strip(), document_text=text)


def analyze_document(pdf_bytes: bytes, reasoning_client: ReasoningClient, *, ocr_engine=None,
                     settings: Optional[Settings] = None) -> NormalizedAnalysis:
    """
    Runs the whole pipeline on one pitch deck: extract the text, ask the model, recover the record

    :param pdf_bytes: content of the PDF
    :param reasoning_client: object with a generate(prompt) -> str method
    :param ocr_engine: optional OCR engine, one is created per document by default
    :param settings: Settings, defaults are used when omitted
    :return: NormalizedAnalysis
    """
    settings = settings or Settings()
    document = extract_document_text(pdf_bytes, ocr_engine, render_scale=settings.render_scale,
                                     ocr_languages=settings.ocr_languages)
    raw = reasoning_client.generate(build_prompt(document))
    return normalize_response(raw)


def pdf_pages(doc_data: bytes) -> int:
    """
    Counts the pages of a PDF with pikepdf

    :param doc_data: bytes
    :return: int
    """
    with pikepdf.open(io.BytesIO(doc_data)) as pdf:
        return len(pdf.pages)


def validate_upload(doc_data: bytes, content_type: Optional[str], max_bytes: int) -> int:
    """
    Checks a document before it is handed to the pipeline

    :param doc_data: bytes
    :param content_type: MIME type reported for the document
    :param max_bytes: size ceiling
    :return: page count
    """
    if not content_type or "pdf" not in content_type.lower():
        raise InvalidDocumentError(f"Expected a PDF document, got {content_type or 'unknown type'}")
    if not doc_data:
        raise InvalidDocumentError("Document is empty")
    if len(doc_data) > max_bytes:
        raise InvalidDocumentError(f"Document is {len(doc_data)} bytes, the limit is {max_bytes}")
    try:
        page_count = pdf_pages(doc_data)
    except pikepdf.PdfError as e:
        raise InvalidDocumentError(f"Document is not a readable PDF: {e}") from e
    logger.info("PDF Page Count: %d", page_count)
    return page_count


def load_document(source: str, timeout: float = 60.0) -> tuple:
    """
    Reads a pitch deck from a URL or a local path

    :param source: http(s) URL or file path
    :param timeout: download timeout in seconds
    :return: (bytes, content type)
    """
    if re.match(r"https?://", source):
        response = httpx.get(source, follow_redirects=True, timeout=timeout)
        response.raise_for_status()
        content_type = response.headers.get("content-type") or mimetypes.guess_type(source)[0]
        return response.content, content_type

    path = Path(source)
    return path.read_bytes(), mimetypes.guess_type(path.name)[0]


def find_deck_link(cell) -> Optional[str]:
    """
    Returns the deck location in a CSV cell: the last link of an attachment cell, or the cell itself

    :param cell: value of the pitch deck column
    :return: str | None
    """
    if cell is None or (isinstance(cell, float) and pandas.isna(cell)):
        return None
    pdf_string = str(cell).strip()
    if not pdf_string:
        return None
    links = re.findall(r"https?://[^\)\s]+", pdf_string)
    if links:
        return links[-1]
    return pdf_string


def _flatten(value):
    if isinstance(value, list):
        if any(isinstance(item, dict) for item in value):
            return json.dumps(value, ensure_ascii=False)
        return "; ".join(str(item) for item in value)
    return value


def record_to_df(result: NormalizedAnalysis, document: str, analyzed_at: datetime,
                 company_name: Optional[str] = None) -> pandas.DataFrame:
    """
    Converts an analysis to a single-row DataFrame, nested fields flattened to dotted columns

    :param result: NormalizedAnalysis
    :param document: reference to the analyzed document
    :param analyzed_at: datetime
    :param company_name: optional name the deck was listed under
    :return: pandas.DataFrame
    """
    row = {
        "document": document,
        "company": company_name,
        "analyzed_at": analyzed_at.isoformat(),
        "repair_tier": int(result.tier),
        "confidence": result.confidence,
        "unresolved_ratings": "; ".join(result.unresolved_ratings),
    }
    df = pandas.json_normalize(result.record.model_dump())
    for column in df.columns:
        row[column] = _flatten(df.at[0, column])
    return pandas.DataFrame([row])


class ExcelManager:
    """
    Thread-safe manager for Excel file operations
    """

    def __init__(self, file_path):
        self.file_path = file_path
        self.lock = threading.Lock()

    def append_dataframe(self, df):
        """
        Appends a dataframe to the Excel file in a thread-safe manner

        :param df: pandas DataFrame containing data to append
        :return: None
        """
        if df is None:
            return

        with self.lock:
            if os.path.exists(self.file_path):
                existing_df = pandas.read_excel(self.file_path)
                updated_df = pandas.concat([existing_df, df], ignore_index=True)
                updated_df.to_excel(self.file_path, index=False)
            else:
                df.to_excel(self.file_path, index=False)

            logger.info("Data successfully written to %s", self.file_path)


def process_deck(reasoning_client, excel_manager, company_name, source, row_i, total_rows, settings):
    """
    Analyze a single pitch deck and append the result to the workbook

    :param reasoning_client: ReasoningClient
    :param excel_manager: ExcelManager instance
    :param company_name: name the deck is listed under
    :param source: URL or path of the deck
    :param row_i: Row index
    :param total_rows: Total number of rows
    :param settings: Settings
    :return: True if processed successfully, False otherwise
    """
    logger.info("Processing deck %d/%d: %s", row_i + 1, total_rows, company_name or source)

    try:
        doc_data, content_type = load_document(source, settings.download_timeout)
    except (httpx.HTTPError, OSError) as e:
        logger.error("Error retrieving PDF for %s: %s", company_name or source, e)
        return False

    try:
        validate_upload(doc_data, content_type, settings.max_pdf_bytes)
        result = analyze_document(doc_data, reasoning_client, settings=settings)
    except (InvalidDocumentError, AnalysisError) as e:
        logger.error("Analysis failed for %s: %s", company_name or source, e)
        return False

    analyzed_at = datetime.now(timezone.utc)
    excel_manager.append_dataframe(record_to_df(result, source, analyzed_at, company_name))
    return True


def main(model_name: Optional[str] = None, num_decks: Optional[int] = None,
         csv_file_path: str = "decks.csv", company_name: Optional[str] = None, file_path: str = "output.xlsx",
         max_workers: Optional[int] = None, name_column: str = "company", deck_column: str = "pitch_deck",
         settings: Optional[Settings] = None, reasoning_client: Optional[ReasoningClient] = None) -> int:
    """
    Analyzes every pitch deck listed in a CSV file, several decks at a time, and collects the results in
    an Excel workbook.

    :param model_name: overrides the configured Gemini model
    :param num_decks: maximum number of decks to process
    :param csv_file_path: CSV with a company name column and a pitch deck column (path, URL or attachment cell)
    :param company_name: if provided, processing starts from this company
    :param file_path: Excel workbook the results are appended to
    :param max_workers: worker threads, defaults to the number of API keys
    :param name_column: column holding the company name
    :param deck_column: column holding the pitch deck location
    :param settings: Settings, loaded from .env when omitted
    :param reasoning_client: client to use instead of the configured Gemini pool
    :return: number of decks processed successfully
    """
    settings = settings or load_settings()
    if model_name:
        settings = dataclasses.replace(settings, model_name=model_name)
    if reasoning_client is None:
        reasoning_client = GeminiReasoningClient.from_settings(settings)
    excel_manager = ExcelManager(file_path)

    if max_workers is None:
        max_workers = max(len(settings.api_keys), 1)

    df = pandas.read_csv(csv_file_path)
    total_rows = df.shape[0]

    start_index = 0
    if company_name is not None:
        company_rows = df[df[name_column] == company_name].index.tolist()
        if company_rows:
            start_index = company_rows[0]
            logger.info("Starting processing from company '%s' at index %d", company_name, start_index)
        else:
            logger.warning("Company '%s' not found in dataset. Starting from the beginning.", company_name)

    decks_to_process = []
    for row_i in range(start_index, total_rows):
        row = df.iloc[row_i]
        source = find_deck_link(row[deck_column])
        if source is None:
            continue
        name = row[name_column] if name_column in df.columns else None
        decks_to_process.append((name, source, row_i))
        if num_decks is not None and len(decks_to_process) >= num_decks:
            break

    processed_count = 0
    total_to_process = len(decks_to_process)
    logger.info("Starting processing of %d decks with %d worker threads", total_to_process, max_workers)

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_deck = {
            executor.submit(
                process_deck,
                reasoning_client,
                excel_manager,
                name,
                source,
                row_i,
                total_rows,
                settings,
            ): (name, row_i)
            for name, source, row_i in decks_to_process
        }

        for future in concurrent.futures.as_completed(future_to_deck):
            name, row_i = future_to_deck[future]
            try:
                if future.result():
                    processed_count += 1
                logger.info("Completed %d/%d decks", processed_count, total_to_process)
            except Exception:
                logger.exception("Error processing deck at row %d", row_i + 1)

    logger.info("Completed processing %d decks", processed_count)
    return processed_count


def run(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Analyze the pitch decks listed in a CSV file")
    parser.add_argument("csv_file_path")
    parser.add_argument("-o", "--output", default="output.xlsx", help="Excel workbook to append results to")
    parser.add_argument("--model", help="Gemini model name")
    parser.add_argument("--limit", type=int, help="maximum number of decks to process")
    parser.add_argument("--start-from", help="company name to start from")
    parser.add_argument("--workers", type=int, help="number of worker threads")
    parser.add_argument("--name-column", default="company")
    parser.add_argument("--deck-column", default="pitch_deck")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        main(model_name=args.model, num_decks=args.limit, csv_file_path=args.csv_file_path,
             company_name=args.start_from, file_path=args.output, max_workers=args.workers,
             name_column=args.name_column, deck_column=args.deck_column)
    except AnalysisError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
