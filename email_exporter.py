#!/usr/bin/env python3
"""
Gmail CSV Exporter Script

Exports messages from a Gmail account to CSV files.
- Message bodies are decoded from the Gmail payload tree and cleaned of markup,
  boilerplate footers, signatures and tracking links
- Exports are either flat (one row per message) or grouped by conversation thread
  with messages ordered oldest first
- Rows are written to timestamped CSV files in bounded-size chunks
Authentication is handled outside this script; it expects a ready access token.
"""

import datetime
import os
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Dict, Iterable, List, Optional

from dotenv import load_dotenv

from gmail_client import GmailApiClient, GmailApiError, listing_ids
from mime_decoder import UNKNOWN_ID, DecodedEmail, MimePartDecoder, is_malformed_message

MESSAGE_CSV_HEADER = ["Message ID", "Thread ID", "Date", "From", "To", "Subject", "Body"]
THREAD_CSV_HEADER = [
    "Thread ID", "Thread Position", "Message ID", "Date", "From", "To", "Subject", "Body",
]

DEFAULT_CHUNK_SIZE = 1_000_000  # ~1MB of buffered row text
DEFAULT_EXPORTS_DIR = "csv_exports"


@dataclass
class ProcessingStats:
    """Statistics for one export run with error tracking and timing"""
    total_fetched: int = 0
    decoded: int = 0
    malformed: int = 0
    short_bodies: int = 0
    errors: int = 0

    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None

    # Bodies shorter than this are reported as possibly over-cleaned
    short_body_threshold: int = 20

    def start_processing(self) -> None:
        """Mark the start of processing"""
        self.start_time = datetime.datetime.now()

    def end_processing(self) -> None:
        """Mark the end of processing"""
        self.end_time = datetime.datetime.now()

    def get_processing_duration(self) -> Optional[str]:
        """Get formatted processing duration"""
        if self.start_time and self.end_time:
            duration = self.end_time - self.start_time
            total_seconds = int(duration.total_seconds())
            hours, remainder = divmod(total_seconds, 3600)
            minutes, seconds = divmod(remainder, 60)

            if hours > 0:
                return f"{hours}h {minutes}m {seconds}s"
            elif minutes > 0:
                return f"{minutes}m {seconds}s"
            else:
                return f"{seconds}s"
        return None

    def record(self, decoded_email: DecodedEmail) -> None:
        self.decoded += 1
        if len(decoded_email.body) < self.short_body_threshold:
            self.short_bodies += 1

    def get_summary(self) -> str:
        """Get a formatted summary of processing statistics"""
        duration_str = self.get_processing_duration()
        duration_line = f"\n  Processing time: {duration_str}" if duration_str else ""

        return (f"Processing Summary:\n"
                f"  Total fetched: {self.total_fetched}\n"
                f"  Decoded: {self.decoded}\n"
                f"  Malformed: {self.malformed}\n"
                f"  Short bodies: {self.short_bodies}\n"
                f"  Errors: {self.errors}{duration_line}")

    def get_quick_stats(self) -> str:
        """Get a quick one-line summary for progress logging"""
        return f"processed: {self.total_fetched}, decoded: {self.decoded}, errors: {self.errors}"


@dataclass
class ExportResult:
    """Outcome of one export call"""
    success: bool
    count: Optional[int] = None
    thread_count: Optional[int] = None
    message_count: Optional[int] = None
    file_path: Optional[str] = None
    error: Optional[str] = None
    stats: Optional[ProcessingStats] = field(default=None, repr=False, compare=False)

    @classmethod
    def failure(cls, error: str) -> "ExportResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict:
        """Render the result in the shape callers of the exporter expect"""
        if not self.success:
            return {"success": False, "error": self.error}

        result = {"success": True}
        if self.thread_count is not None:
            result["threadCount"] = self.thread_count
            result["messageCount"] = self.message_count
        else:
            result["count"] = self.count
        if self.file_path:
            result["filePath"] = self.file_path
        return result


class EmailExporterConfig:
    """Handles configuration validation from environment variables"""

    EXPORT_MODES = ("messages", "threads")

    def __init__(self):
        self.email_address: Optional[str] = None
        self.access_token: Optional[str] = None
        self.export_mode: str = "messages"
        self.max_results: int = 50
        self.label_ids: List[str] = ["SENT"]
        self.exports_dir: str = DEFAULT_EXPORTS_DIR
        self.chunk_size: int = DEFAULT_CHUNK_SIZE
        self.fetch_workers: int = 10

    def validate_environment(self) -> None:
        """
        Validate that all required environment variables are present.
        Exits with error message if any required fields are missing or invalid.
        """
        # Load environment variables from .env file
        load_dotenv()

        required_vars = ['EMAIL_ADDRESS', 'GMAIL_ACCESS_TOKEN']
        missing_vars = []

        for var in required_vars:
            value = os.getenv(var)
            if not value or value.strip() == '':
                missing_vars.append(var)

        if missing_vars:
            print(f"Error: Missing required environment variables: {', '.join(missing_vars)}")
            print("Please ensure your .env file contains:")
            for var in missing_vars:
                print(f"  {var}=your_value_here")
            sys.exit(1)

        self.email_address = os.getenv('EMAIL_ADDRESS').strip()
        self.access_token = os.getenv('GMAIL_ACCESS_TOKEN').strip()

        self.export_mode = os.getenv('EXPORT_MODE', 'messages').strip().lower()
        if self.export_mode not in self.EXPORT_MODES:
            print(f"Error: Invalid EXPORT_MODE '{self.export_mode}'. Supported modes: {', '.join(self.EXPORT_MODES)}")
            sys.exit(1)

        labels = os.getenv('LABEL_IDS', 'SENT')
        self.label_ids = [label.strip() for label in labels.split(',') if label.strip()] or ['SENT']

        self.exports_dir = os.getenv('EXPORTS_DIR', DEFAULT_EXPORTS_DIR).strip() or DEFAULT_EXPORTS_DIR
        self.max_results = self._read_positive_int('MAX_RESULTS', 50)
        self.chunk_size = self._read_positive_int('CSV_CHUNK_SIZE', DEFAULT_CHUNK_SIZE)
        self.fetch_workers = self._read_positive_int('FETCH_WORKERS', 10)

        print(f"Configuration validated successfully for {self.email_address}")

    @staticmethod
    def _read_positive_int(name: str, default: int) -> int:
        raw_value = os.getenv(name)
        if raw_value is None or raw_value.strip() == '':
            return default
        try:
            value = int(raw_value)
        except ValueError:
            value = 0
        if value <= 0:
            print(f"Error: {name} must be a positive integer, got '{raw_value}'")
            sys.exit(1)
        return value


def parse_message_date(date_value: Optional[str]) -> Optional[datetime.datetime]:
    """
    Parse a Date header (RFC 2822, or ISO-8601 as a fallback).

    Args:
        date_value: Raw header value

    Returns:
        datetime: Timezone-aware datetime (naive values are taken as UTC), or None
    """
    if not date_value or not date_value.strip():
        return None

    parsed = None
    try:
        parsed = parsedate_to_datetime(date_value)
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        try:
            parsed = datetime.datetime.fromisoformat(date_value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class ThreadOrganizer:
    """Groups decoded messages by thread and orders each thread chronologically"""

    def organize(self, records: Iterable[DecodedEmail]) -> Dict[str, List[DecodedEmail]]:
        """
        Group records by thread id and sort each group oldest first.

        Groups keep first-seen order. Messages with equal or unparsable dates keep
        their original relative order; unparsable dates sort after parsable ones.

        Args:
            records: Decoded messages

        Returns:
            dict: Thread id mapped to its ordered messages
        """
        threads: Dict[str, List[DecodedEmail]] = {}
        for record in records:
            threads.setdefault(record.thread_id, []).append(record)

        for thread_id, messages in threads.items():
            threads[thread_id] = sorted(messages, key=self._sort_key)

        return threads

    @staticmethod
    def _sort_key(record: DecodedEmail):
        parsed = parse_message_date(record.date)
        if parsed is None:
            return (1, 0.0)
        return (0, parsed.timestamp())


def escape_csv_field(value) -> str:
    """
    Escape one CSV field.

    Fields containing a double quote, comma or line break are wrapped in double
    quotes with inner quotes doubled; everything else is written as is.
    """
    if value is None:
        return ""

    text = str(value)
    if any(char in text for char in ('"', ',', '\n', '\r')):
        return '"' + text.replace('"', '""') + '"'
    return text


def format_csv_row(values: Iterable) -> str:
    return ",".join(escape_csv_field(value) for value in values) + "\n"


def format_export_timestamp(moment: Optional[datetime.datetime] = None) -> str:
    """Return a UTC ISO-8601 instant with millisecond precision, safe for file names"""
    moment = moment or datetime.datetime.now(datetime.timezone.utc)
    moment = moment.astimezone(datetime.timezone.utc)
    iso_instant = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"
    return iso_instant.replace(":", "-").replace(".", "-")


def generate_export_filename(
    account: str,
    exports_dir: str = DEFAULT_EXPORTS_DIR,
    threaded: bool = False,
    moment: Optional[datetime.datetime] = None,
) -> str:
    """Generate the export path: <account with @ replaced>[_threads]_<timestamp>.csv"""
    account_part = account.replace("@", "_at_")
    infix = "_threads_" if threaded else "_"
    filename = f"{account_part}{infix}{format_export_timestamp(moment)}.csv"
    return os.path.join(exports_dir, filename)


class CsvOutputWriter:
    """Writes decoded messages to a CSV file, appending buffered rows in bounded chunks"""

    # Per-path locks so appends from concurrent exports never interleave; entries
    # are dropped once no writer holds them
    _path_locks: Dict[str, list] = {}
    _path_locks_guard = threading.Lock()

    def __init__(self, output_file: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Initialize the writer for one output file.

        Args:
            output_file: Requested CSV path; an existing file is never overwritten,
                so the path actually written is available as output_file afterwards
            chunk_size: Buffered characters that trigger an append to disk
        """
        self.output_file = output_file
        self.chunk_size = max(1, chunk_size)
        self.rows_written = 0
        self.chunks_flushed = 0

        self._ensure_output_directory()

    def _ensure_output_directory(self) -> None:
        """Create output directory if it doesn't exist"""
        output_dir = os.path.dirname(self.output_file)
        if output_dir and not os.path.exists(output_dir):
            os.makedirs(output_dir, exist_ok=True)
            print(f"Created output directory: {output_dir}")

    @classmethod
    @contextmanager
    def _path_lock(cls, path: str):
        key = os.path.abspath(path)
        with cls._path_locks_guard:
            entry = cls._path_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with cls._path_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del cls._path_locks[key]

    def write_messages(self, records: Iterable[DecodedEmail]) -> int:
        """
        Write a flat export: one header row, then one row per message.

        Returns:
            int: Number of data rows written
        """
        rows = (
            [record.id, record.thread_id, record.date, record.from_address,
             record.to, record.subject, record.body]
            for record in records
        )
        return self._write(MESSAGE_CSV_HEADER, rows)

    def write_threads(self, threads: Dict[str, List[DecodedEmail]]) -> int:
        """
        Write a thread export with a 1-based position for each message in its thread.

        Returns:
            int: Number of data rows written
        """
        rows = (
            [thread_id, position, record.id, record.date, record.from_address,
             record.to, record.subject, record.body]
            for thread_id, records in threads.items()
            for position, record in enumerate(records, 1)
        )
        return self._write(THREAD_CSV_HEADER, rows)

    def _write(self, header: List[str], rows: Iterable[List]) -> int:
        with self._path_lock(self.output_file):
            self._create_output_file(header)

            try:
                buffer = []
                buffered_chars = 0
                for row in rows:
                    line = format_csv_row(row)
                    buffer.append(line)
                    buffered_chars += len(line)
                    self.rows_written += 1

                    if buffered_chars > self.chunk_size:
                        self._append_chunk(buffer)
                        buffer = []
                        buffered_chars = 0

                if buffer:
                    self._append_chunk(buffer)
            except Exception:
                # A half-written export is never left behind under a reported name
                os.remove(self.output_file)
                raise

        return self.rows_written

    def _create_output_file(self, header: List[str]) -> None:
        """Create the output file exclusively and write the header row"""
        base, extension = os.path.splitext(self.output_file)
        candidate = self.output_file
        attempt = 0
        while True:
            try:
                with open(candidate, 'x', encoding='utf-8', errors='replace', newline='') as f:
                    f.write(format_csv_row(header))
                break
            except FileExistsError:
                attempt += 1
                candidate = f"{base}-{attempt}{extension}"

        if candidate != self.output_file:
            print(f"Warning: {self.output_file} already exists, writing to {candidate}")
            self.output_file = candidate

    def _append_chunk(self, lines: List[str]) -> None:
        # Lone surrogates from the API JSON cannot be encoded; they become '?'
        with open(self.output_file, 'a', encoding='utf-8', errors='replace', newline='') as f:
            f.write("".join(lines))
        self.chunks_flushed += 1


class EmailExportPipeline:
    """Sequences decoding, optional thread grouping and CSV serialization for one export"""

    def __init__(
        self,
        exports_dir: str = DEFAULT_EXPORTS_DIR,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        decoder: Optional[MimePartDecoder] = None,
        organizer: Optional[ThreadOrganizer] = None,
    ):
        self.exports_dir = exports_dir
        self.chunk_size = chunk_size
        self.decoder = decoder or MimePartDecoder()
        self.organizer = organizer or ThreadOrganizer()

    def _decode_one(self, message, stats: ProcessingStats, thread_id: Optional[str] = None) -> DecodedEmail:
        """Decode one message, degrading it to a placeholder row if cleaning fails"""
        stats.total_fetched += 1
        if is_malformed_message(message):
            stats.malformed += 1

        try:
            decoded_email = self.decoder.decode_message(message, thread_id=thread_id)
        except Exception as e:
            message_id = message.get("id") if isinstance(message, dict) else None
            print(f"Warning: Failed to decode message {message_id or UNKNOWN_ID}: {str(e)}")
            stats.errors += 1
            decoded_email = DecodedEmail(
                id=str(message_id or UNKNOWN_ID),
                thread_id=str(thread_id or (message.get("threadId") if isinstance(message, dict) else None) or UNKNOWN_ID),
                date="",
                from_address="",
                to="",
                subject="",
            )

        stats.record(decoded_email)
        return decoded_email

    def decode_messages(self, messages: Iterable[Dict], stats: ProcessingStats) -> List[DecodedEmail]:
        return [self._decode_one(message, stats) for message in messages]

    def export_messages(self, account: str, messages: List[Dict]) -> ExportResult:
        """
        Decode full message resources and write a flat CSV export.

        Args:
            account: Account address used in the file name
            messages: Message resources from users.messages.get

        Returns:
            ExportResult: {success, count, filePath} or {success: False, error}
        """
        stats = ProcessingStats()
        stats.start_processing()

        try:
            records = self.decode_messages(messages, stats)
            output_file = generate_export_filename(account, self.exports_dir)
            writer = CsvOutputWriter(output_file, self.chunk_size)
            writer.write_messages(records)
            output_file = writer.output_file
        except (OSError, ValueError) as e:
            print(f"Error: Failed to write CSV export for {account}: {str(e)}")
            return ExportResult.failure(str(e))

        stats.end_processing()
        print(f"CSV file created at: {output_file}")
        print(stats.get_summary())

        return ExportResult(success=True, count=len(records), file_path=output_file, stats=stats)

    def export_threads(self, account: str, threads: List[Dict]) -> ExportResult:
        """
        Decode full thread resources and write a thread-grouped CSV export.

        Args:
            account: Account address used in the file name
            threads: Thread resources from users.threads.get

        Returns:
            ExportResult: {success, threadCount, messageCount, filePath} or {success: False, error}
        """
        stats = ProcessingStats()
        stats.start_processing()

        try:
            records = []
            total_message_count = 0
            for thread in threads:
                if not isinstance(thread, dict) or not isinstance(thread.get("messages"), list):
                    print("Warning: Thread has an unexpected structure, skipping")
                    stats.malformed += 1
                    continue

                thread_id = thread.get("id") or UNKNOWN_ID
                total_message_count += len(thread["messages"])
                for message in thread["messages"]:
                    records.append(self._decode_one(message, stats, thread_id=thread_id))

            threaded_emails = self.organizer.organize(records)

            output_file = generate_export_filename(account, self.exports_dir, threaded=True)
            writer = CsvOutputWriter(output_file, self.chunk_size)
            writer.write_threads(threaded_emails)
            output_file = writer.output_file
        except (OSError, ValueError) as e:
            print(f"Error: Failed to write thread CSV export for {account}: {str(e)}")
            return ExportResult.failure(str(e))

        stats.end_processing()
        print(f"Thread-based CSV created at: {output_file}")
        print(stats.get_summary())

        return ExportResult(
            success=True,
            thread_count=len(threaded_emails),
            message_count=total_message_count,
            file_path=output_file,
            stats=stats,
        )

    def process_emails_to_csv(
        self,
        account: str,
        client: GmailApiClient,
        max_results: int = 50,
        label_ids: Iterable[str] = ("SENT",),
    ) -> ExportResult:
        """
        Fetch messages for the given labels and export them to a flat CSV file.

        Every failure is reported as a failed result rather than raised.
        """
        label_ids = [label_ids] if isinstance(label_ids, str) else list(label_ids)
        print(f"Processing emails for {account} from labels: {', '.join(label_ids)}")

        try:
            listing = client.list_messages(max_results, label_ids)
            if not listing:
                print(f"No messages found for {account}")
                return ExportResult(success=True, count=0)

            print(f"Found {len(listing)} messages for {account}")
            messages = client.get_messages(listing_ids(listing, "messages"))
            return self.export_messages(account, messages)
        except GmailApiError as e:
            print(f"Error: Failed to fetch emails for {account}: {str(e)}")
            return ExportResult.failure(str(e))
        except Exception as e:
            print(f"Error: Unexpected failure exporting emails for {account}: {str(e)}")
            return ExportResult.failure(str(e))

    def process_threads_to_csv(
        self,
        account: str,
        client: GmailApiClient,
        max_results: int = 50,
        label_ids: Iterable[str] = ("SENT",),
    ) -> ExportResult:
        """Fetch complete threads for the given labels and export them to a thread CSV file"""
        label_ids = [label_ids] if isinstance(label_ids, str) else list(label_ids)
        print(f"Processing email threads for {account} from labels: {', '.join(label_ids)}")

        try:
            listing = client.list_threads(max_results, label_ids)
            if not listing:
                print(f"No threads found for {account}")
                return ExportResult(success=True, count=0)

            print(f"Found {len(listing)} threads for {account}")
            threads = client.get_threads(listing_ids(listing, "threads"))
            return self.export_threads(account, threads)
        except GmailApiError as e:
            print(f"Error: Failed to fetch email threads for {account}: {str(e)}")
            return ExportResult.failure(str(e))
        except Exception as e:
            print(f"Error: Unexpected failure exporting email threads for {account}: {str(e)}")
            return ExportResult.failure(str(e))


def main():
    """Main entry point for the Gmail CSV Exporter Script"""
    print("=" * 80)
    print("GMAIL CSV EXPORTER")
    print("=" * 80)

    try:
        print("\n[1/3] Configuration Validation")
        print("-" * 40)
        config = EmailExporterConfig()
        config.validate_environment()

        print("\n[2/3] Export")
        print("-" * 40)
        print(f"Export mode: {config.export_mode}")
        print(f"Labels: {', '.join(config.label_ids)}")
        print(f"Max results: {config.max_results}")

        client = GmailApiClient(config.access_token, fetch_workers=config.fetch_workers)
        pipeline = EmailExportPipeline(config.exports_dir, config.chunk_size)

        if config.export_mode == 'threads':
            result = pipeline.process_threads_to_csv(
                config.email_address, client, config.max_results, config.label_ids
            )
        else:
            result = pipeline.process_emails_to_csv(
                config.email_address, client, config.max_results, config.label_ids
            )

        print("\n[3/3] Final Summary")
        print("-" * 40)
        if not result.success:
            print(f"Error: Export failed: {result.error}")
            sys.exit(1)

        if result.file_path:
            print(f"Output saved to: {result.file_path}")
        else:
            print("Nothing to export")
        print(result.to_dict())
        print("=" * 80)

    except KeyboardInterrupt:
        print("\nScript interrupted by user (Ctrl+C)")
        sys.exit(0)


if __name__ == "__main__":
    main()
