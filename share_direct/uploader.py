"""
Share Direct — Azure File Share Range Uploader
CLI utility for uploading a single local file to an Azure Files share in 4 MiB ranges.

Usage:
    python -m share_direct

    The path of the local file is read from an interactive prompt. The file always
    lands at test-file-share/test-folder/test-file.pdf, whatever its local name.

Features:
    - Connection string or generated account SAS authentication
    - Remote file pre-allocated to the exact local size
    - Half-open 4 MiB range writes, sequential by default
    - Optional bounded concurrency for range writes
    - Per-range MD5 sent with each write and checked against the service response
"""

import os
import sys
import base64
import binascii
import hashlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from azure.storage.fileshare import (
    AccountSasPermissions,
    ContentSettings,
    ResourceTypes,
    ShareFileClient,
    ShareServiceClient,
    generate_account_sas,
)
from azure.core.exceptions import AzureError
from dotenv import load_dotenv

# Range size in bytes, the largest range a single Put Range call accepts
RANGE_SIZE = 4 * 1024 * 1024

SHARE_NAME = "test-file-share"
DIRECTORY_NAME = "test-folder"
DESTINATION_FILE_NAME = "test-file.pdf"
DESTINATION_CONTENT_TYPE = "application/pdf"

SAS_LIFETIME = timedelta(hours=1)

PROMPT = "Enter the path to the test file: "

AUTH_SAS = "sas"
AUTH_CONNECTION_STRING = "connection_string"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _build_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "uploader_process.log"

    logger = logging.getLogger("share_direct")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console)
    logger.addHandler(fh)
    return logger


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

_DEFAULTS = {
    "CONCURRENCY": 1,
    "CONNECTION_TIMEOUT": 30,
    "READ_TIMEOUT": 120,
}

_PLACEHOLDER_NAMES = ("your_account", "your_account_name")
_PLACEHOLDER_KEYS = ("your_account_key", "your_key")


class Config:
    def __init__(self) -> None:
        if os.getenv("NODE_ENV") != "production":
            load_dotenv()

        mode = os.getenv("AUTH_MODE") or (
            AUTH_CONNECTION_STRING if os.getenv("CONNECTION_STRING") else AUTH_SAS
        )
        self.auth_mode: str = mode.strip().lower()

        self.connection_string: Optional[str] = None
        self.account_name: Optional[str] = None
        self.account_key: Optional[str] = None

        if self.auth_mode == AUTH_CONNECTION_STRING:
            self.connection_string = os.environ["CONNECTION_STRING"]
            self._validate_connection_string()
        elif self.auth_mode == AUTH_SAS:
            self.account_name = os.environ["ACCOUNT_NAME"].strip()
            self.account_key = os.environ["ACCOUNT_KEY"].strip()
            self._validate_account_credentials()
        else:
            raise ValueError(
                f"AUTH_MODE must be '{AUTH_SAS}' or '{AUTH_CONNECTION_STRING}'. Got '{mode}'."
            )

        self.range_size: int = RANGE_SIZE
        self.share_name: str = SHARE_NAME
        self.directory_name: str = DIRECTORY_NAME
        self.file_name: str = DESTINATION_FILE_NAME

        self.concurrency: int = int(
            os.getenv("CONCURRENCY", _DEFAULTS["CONCURRENCY"])
        )
        if self.concurrency < 1:
            raise ValueError("CONCURRENCY must be at least 1.")

        self.connection_timeout: int = int(
            os.getenv("CONNECTION_TIMEOUT", _DEFAULTS["CONNECTION_TIMEOUT"])
        )
        self.read_timeout: int = int(
            os.getenv("READ_TIMEOUT", _DEFAULTS["READ_TIMEOUT"])
        )
        self.log_path: Optional[str] = os.getenv("LOG_PATH")

    def _validate_connection_string(self) -> None:
        """Parse the connection string and validate each component before connecting."""
        cs = self.connection_string.strip()
        if not cs:
            raise ValueError("CONNECTION_STRING is empty.")

        parts = {}
        for segment in cs.split(";"):
            segment = segment.strip()
            if not segment:
                continue
            if "=" not in segment:
                raise ValueError(
                    f"Malformed CONNECTION_STRING: segment '{segment}' has no '=' separator.\n"
                    "Copy a fresh connection string from Azure Portal → Storage account → Access keys."
                )
            key, _, value = segment.partition("=")
            parts[key.strip()] = value.strip()

        if "AccountName" not in parts and "FileEndpoint" not in parts:
            raise ValueError(
                "CONNECTION_STRING names no account (expected 'AccountName' or 'FileEndpoint')."
            )
        if "AccountKey" not in parts and "SharedAccessSignature" not in parts:
            raise ValueError(
                "CONNECTION_STRING carries no credential "
                "(expected 'AccountKey' or 'SharedAccessSignature')."
            )

        if "AccountName" in parts:
            _check_account_name(parts["AccountName"], "CONNECTION_STRING")
        if "AccountKey" in parts:
            _check_account_key(parts["AccountKey"], "CONNECTION_STRING")

        protocol = parts.get("DefaultEndpointsProtocol")
        if protocol is not None and protocol.lower() != "https":
            raise ValueError(
                "CONNECTION_STRING uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
            )

    def _validate_account_credentials(self) -> None:
        _check_account_name(self.account_name, "ACCOUNT_NAME")
        _check_account_key(self.account_key, "ACCOUNT_KEY")


def _check_account_name(account_name: str, source: str) -> None:
    if not account_name or account_name in _PLACEHOLDER_NAMES:
        raise ValueError(
            f"{source} has an empty or placeholder account name. "
            "Replace it with your real Azure Storage account name."
        )


def _check_account_key(raw_key: str, source: str) -> None:
    if not raw_key or raw_key in _PLACEHOLDER_KEYS:
        raise ValueError(
            f"{source} has an empty or placeholder account key. "
            "Copy a fresh key from Azure Portal → Storage account → Access keys."
        )

    # Azure storage account keys are 64-byte values, base64-encoded → 88 chars with padding
    if len(raw_key) < 40:
        raise ValueError(
            f"{source} account key looks too short ({len(raw_key)} chars). "
            "It was likely truncated."
        )

    padding_needed = len(raw_key) % 4
    if padding_needed != 0:
        padded = raw_key + "=" * (4 - padding_needed)
    else:
        padded = raw_key

    try:
        decoded = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError(
            f"{source} account key is not valid base64 — it is corrupted or truncated."
        )

    if len(decoded) != 64:
        raise ValueError(
            f"{source} account key decoded to {len(decoded)} bytes (expected 64). "
            "The key appears truncated."
        )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class StorageSession:
    """An authenticated service client bound to one share and directory."""

    def __init__(
        self,
        service: ShareServiceClient,
        share_name: str = SHARE_NAME,
        directory_name: str = DIRECTORY_NAME,
    ) -> None:
        self.service = service
        self.share_name = share_name
        self.directory_name = directory_name

    def file_client(self, file_name: str) -> ShareFileClient:
        share_client = self.service.get_share_client(self.share_name)
        directory_client = share_client.get_directory_client(self.directory_name)
        return directory_client.get_file_client(file_name)


def _account_sas(
    account_name: str, account_key: str, now: Optional[datetime] = None
) -> str:
    """Account SAS for the file service: full access to every resource type for one hour."""
    now = now or datetime.now(timezone.utc)
    return generate_account_sas(
        account_name,
        account_key,
        resource_types=ResourceTypes(service=True, container=True, object=True),
        permission=AccountSasPermissions(
            read=True,
            write=True,
            delete=True,
            list=True,
            add=True,
            create=True,
            update=True,
            process=True,
        ),
        expiry=now + SAS_LIFETIME,
    )


def build_session(cfg: Config) -> StorageSession:
    if cfg.auth_mode == AUTH_CONNECTION_STRING:
        service = ShareServiceClient.from_connection_string(
            cfg.connection_string,
            connection_timeout=cfg.connection_timeout,
            read_timeout=cfg.read_timeout,
        )
    else:
        sas = _account_sas(cfg.account_name, cfg.account_key)
        service = ShareServiceClient(
            f"https://{cfg.account_name}.file.core.windows.net?{sas}",
            connection_timeout=cfg.connection_timeout,
            read_timeout=cfg.read_timeout,
        )
    return StorageSession(service, cfg.share_name, cfg.directory_name)


# ---------------------------------------------------------------------------
# Remote file creation
# ---------------------------------------------------------------------------

def create_remote_file(
    session: StorageSession,
    local_path: Path,
    logger: logging.Logger,
    file_name: str = DESTINATION_FILE_NAME,
) -> ShareFileClient:
    """Create the destination file at the exact size of the local file.

    The local file is read before the share is touched, so an unreadable path
    never results in a remote call.
    """
    local_path = Path(local_path)
    data = local_path.read_bytes()
    size = len(data)

    file_client = session.file_client(file_name)
    file_client.create_file(
        size,
        content_settings=ContentSettings(content_type=DESTINATION_CONTENT_TYPE),
        metadata={
            "uploaded_by": "share_direct",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "original_filename": local_path.name,
            "file_size_bytes": str(size),
        },
    )
    logger.info(
        f"File created: {session.share_name}/{session.directory_name}/{file_name} "
        f"({size:,} bytes)"
    )
    return file_client


# ---------------------------------------------------------------------------
# Uploader core
# ---------------------------------------------------------------------------

class UploadState(Enum):
    NOT_STARTED = "not_started"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"


class RangeChecksumError(AzureError):
    """The service reported an MD5 that differs from the bytes sent for a range."""

    def __init__(self, offset: int, expected: bytes, actual: bytes) -> None:
        self.offset = offset
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Range at offset {offset}: service MD5 {actual.hex()} "
            f"does not match local MD5 {expected.hex()}"
        )


def plan_ranges(total_size: int, range_size: int = RANGE_SIZE) -> list[tuple[int, int]]:
    """Half-open ranges [offset, min(offset + range_size, total_size)) covering the file."""
    if range_size < 1:
        raise ValueError("range_size must be positive")
    return [
        (offset, min(offset + range_size, total_size))
        for offset in range(0, total_size, range_size)
    ]


class RangeUploader:
    """Writes a local file into a pre-created Azure file, one range per call."""

    def __init__(
        self,
        file_client: ShareFileClient,
        local_path: Path,
        logger: logging.Logger,
        range_size: int = RANGE_SIZE,
        concurrency: int = 1,
    ) -> None:
        self.file_client = file_client
        self.local_path = Path(local_path)
        self.logger = logger
        self.range_size = range_size
        self.concurrency = concurrency

        self.state = UploadState.NOT_STARTED
        self.offset = 0
        self._abort = False

    def _write_range(self, data: bytes, start: int, end: int) -> int:
        """Upload data[start:end] and check the MD5 the service echoes back."""
        if self._abort:
            raise RuntimeError("Upload aborted after an earlier range failed.")

        chunk = data[start:end]
        local_md5 = hashlib.md5(chunk).digest()
        self.logger.debug(f"Uploading range starting from offset {start} ({len(chunk):,} bytes)")

        response = self.file_client.upload_range(
            chunk,
            offset=start,
            length=len(chunk),
            validate_content=True,
        )
        remote_md5 = (response or {}).get("content_md5")
        if remote_md5 is not None and bytes(remote_md5) != local_md5:
            raise RangeChecksumError(start, local_md5, bytes(remote_md5))
        return end - start

    def run(self) -> int:
        """Upload every range. Returns the number of range writes issued.

        The first failing range leaves the upload FAILED and its exception
        propagates; bytes already written stay in the remote file.
        """
        data = self.local_path.read_bytes()
        total_size = len(data)
        ranges = plan_ranges(total_size, self.range_size)
        total_ranges = len(ranges)

        self.logger.info(
            f"File : {self.local_path}  ({total_size:,} bytes / "
            f"{total_size / (1024**2):.2f} MiB)"
        )
        self.logger.info(
            f"Range: {self.range_size:,} bytes  |  "
            f"Ranges: {total_ranges}  |  "
            f"Concurrency: {self.concurrency}"
        )

        self.state = UploadState.UPLOADING
        self.offset = 0
        self._abort = False
        t0 = time.monotonic()

        try:
            if self.concurrency == 1:
                for done, (start, end) in enumerate(ranges, 1):
                    self._write_range(data, start, end)
                    self.offset = end
                    self._log_progress(done, total_ranges, end, total_size, t0)
            else:
                self._run_pool(data, ranges, total_size, t0)
        except Exception as exc:
            self._abort = True
            self.state = UploadState.FAILED
            self.logger.error(
                f"Upload failed at offset {self.offset:,} of {total_size:,} — {exc}"
            )
            raise

        self.offset = total_size
        self.state = UploadState.COMPLETE
        return total_ranges

    def _run_pool(
        self, data: bytes, ranges: list[tuple[int, int]], total_size: int, t0: float
    ) -> None:
        bytes_uploaded = 0
        written: dict[int, int] = {}  # start -> end of ranges that succeeded
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = {
                pool.submit(self._write_range, data, start, end): (start, end)
                for start, end in ranges
            }
            for done, future in enumerate(as_completed(futures), 1):
                try:
                    bytes_uploaded += future.result()
                except Exception:
                    self._abort = True
                    for f in futures:
                        f.cancel()
                    raise
                start, end = futures[future]
                written[start] = end
                # cursor only crosses a contiguous run of written ranges
                while self.offset in written:
                    self.offset = written.pop(self.offset)
                self._log_progress(done, len(ranges), bytes_uploaded, total_size, t0)

    def _log_progress(
        self, done: int, total_ranges: int, bytes_uploaded: int, total_size: int, t0: float
    ) -> None:
        elapsed = max(time.monotonic() - t0, 0.001)
        speed_mb = (bytes_uploaded / elapsed) / (1024 * 1024)
        pct = done / total_ranges * 100
        eta_s = (
            (total_size - bytes_uploaded) / (bytes_uploaded / elapsed)
            if bytes_uploaded
            else 0
        )
        self.logger.info(
            f"[{pct:5.1f}%] range {done}/{total_ranges}  "
            f"speed={speed_mb:.1f} MB/s  eta={_fmt_seconds(eta_s)}"
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt_seconds(s: float) -> str:
    if s <= 0:
        return "--:--"
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"


def _read_local_path() -> Path:
    answer = input(PROMPT).strip().strip('"').strip("'")
    return Path(answer).expanduser()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    # Config — validate credentials before touching Azure
    try:
        cfg = Config()
    except KeyError as exc:
        print(
            f"ERROR: {exc.args[0]} not set. Copy .env.template to .env and fill in your credentials.",
            file=sys.stderr,
        )
        sys.exit(1)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    log_dir = Path(cfg.log_path) if cfg.log_path else Path.cwd() / "logs"
    logger = _build_logger(log_dir)

    local_path = _read_local_path()

    logger.info("=" * 60)
    logger.info("  Share Direct — Azure File Share Range Uploader")
    logger.info("=" * 60)
    logger.info(f"Auth      : {cfg.auth_mode}")
    logger.info(f"Source    : {local_path}")
    logger.info(f"Target    : {cfg.share_name}/{cfg.directory_name}/{cfg.file_name}")

    try:
        session = build_session(cfg)
    except Exception as exc:
        logger.error(f"Cannot connect to Azure: {exc}")
        sys.exit(1)

    try:
        file_client = create_remote_file(session, local_path, logger, cfg.file_name)
    except OSError as exc:
        logger.error(f"Cannot read local file: {exc}")
        raise
    except AzureError as exc:
        logger.error(f"Cannot create remote file: {exc}")
        raise

    uploader = RangeUploader(
        file_client,
        local_path,
        logger,
        range_size=cfg.range_size,
        concurrency=cfg.concurrency,
    )
    writes = uploader.run()

    logger.info(f"Upload complete ({writes} range write(s)).")


if __name__ == "__main__":
    main()
