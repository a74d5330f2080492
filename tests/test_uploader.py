import hashlib
import logging
import threading
import time
from unittest.mock import Mock

import pytest
from azure.core.exceptions import HttpResponseError

from share_direct.uploader import (
    RANGE_SIZE,
    RangeChecksumError,
    RangeUploader,
    UploadState,
    create_remote_file,
)


def _echo_md5(data, offset, length, **kwargs):
    return {"etag": '"0x1"', "content_md5": hashlib.md5(data).digest()}


def _file_client():
    client = Mock()
    client.upload_range.side_effect = _echo_md5
    return client


def _write(path, size):
    path.write_bytes(bytes(i % 251 for i in range(size)))
    return path


def test_create_remote_file_allocates_local_size(tmp_path, logger):
    local = _write(tmp_path / "report.bin", 1234)
    session = Mock(share_name="test-file-share", directory_name="test-folder")

    file_client = create_remote_file(session, local, logger)

    session.file_client.assert_called_once_with("test-file.pdf")
    assert file_client is session.file_client.return_value
    args, kwargs = file_client.create_file.call_args
    assert args == (1234,)
    assert kwargs["content_settings"].content_type == "application/pdf"
    assert kwargs["metadata"]["original_filename"] == "report.bin"
    assert kwargs["metadata"]["file_size_bytes"] == "1234"


def test_missing_local_file_makes_no_remote_call(tmp_path, logger):
    session = Mock()

    with pytest.raises(FileNotFoundError):
        create_remote_file(session, tmp_path / "missing.pdf", logger)

    session.file_client.assert_not_called()


def test_empty_file_creates_zero_length_and_writes_nothing(tmp_path, logger):
    local = _write(tmp_path / "empty.pdf", 0)
    session = Mock(share_name="s", directory_name="d")

    file_client = create_remote_file(session, local, logger)
    file_client.create_file.assert_called_once()
    assert file_client.create_file.call_args[0] == (0,)

    uploader = RangeUploader(file_client, local, logger)
    assert uploader.run() == 0
    file_client.upload_range.assert_not_called()
    assert uploader.state is UploadState.COMPLETE
    assert uploader.offset == 0


def test_ten_million_bytes_uploaded_in_three_ranges(tmp_path, logger):
    local = _write(tmp_path / "big.pdf", 10_000_000)
    payload = local.read_bytes()
    file_client = _file_client()

    uploader = RangeUploader(file_client, local, logger, range_size=RANGE_SIZE)
    assert uploader.state is UploadState.NOT_STARTED

    assert uploader.run() == 3

    calls = file_client.upload_range.call_args_list
    assert [c.kwargs["offset"] for c in calls] == [0, 4194304, 8388608]
    assert [c.kwargs["length"] for c in calls] == [4194304, 4194304, 1_611_392]
    assert b"".join(c.args[0] for c in calls) == payload
    assert all(c.kwargs["validate_content"] for c in calls)
    assert uploader.state is UploadState.COMPLETE
    assert uploader.offset == 10_000_000


def test_failed_range_stops_upload(tmp_path, logger):
    local = _write(tmp_path / "f.pdf", 50)
    file_client = Mock()
    file_client.upload_range.side_effect = [
        {"content_md5": None},
        HttpResponseError(message="quota exceeded"),
        {"content_md5": None},
    ]

    uploader = RangeUploader(file_client, local, logger, range_size=10)
    with pytest.raises(HttpResponseError):
        uploader.run()

    assert file_client.upload_range.call_count == 2
    assert uploader.state is UploadState.FAILED
    assert uploader.offset == 10


def test_checksum_mismatch_fails_upload(tmp_path, logger):
    local = _write(tmp_path / "f.pdf", 25)
    file_client = Mock()
    file_client.upload_range.return_value = {"content_md5": b"\x00" * 16}

    uploader = RangeUploader(file_client, local, logger, range_size=10)
    with pytest.raises(RangeChecksumError) as excinfo:
        uploader.run()

    assert excinfo.value.offset == 0
    assert file_client.upload_range.call_count == 1
    assert uploader.state is UploadState.FAILED


def test_missing_service_checksum_is_accepted(tmp_path, logger):
    local = _write(tmp_path / "f.pdf", 25)
    file_client = Mock()
    file_client.upload_range.return_value = {"etag": '"0x1"'}

    assert RangeUploader(file_client, local, logger, range_size=10).run() == 3


def test_concurrent_upload_covers_every_range(tmp_path, logger):
    local = _write(tmp_path / "f.pdf", 95)
    payload = local.read_bytes()
    file_client = _file_client()

    uploader = RangeUploader(file_client, local, logger, range_size=10, concurrency=4)
    assert uploader.run() == 10

    calls = sorted(file_client.upload_range.call_args_list, key=lambda c: c.kwargs["offset"])
    assert [c.kwargs["offset"] for c in calls] == list(range(0, 95, 10))
    assert b"".join(c.args[0] for c in calls) == payload
    assert uploader.state is UploadState.COMPLETE
    assert uploader.offset == 95


def test_concurrent_upload_failure_propagates(tmp_path, logger):
    local = _write(tmp_path / "f.pdf", 40)
    file_client = Mock()
    file_client.upload_range.side_effect = HttpResponseError(message="boom")

    uploader = RangeUploader(file_client, local, logger, range_size=10, concurrency=2)
    with pytest.raises(HttpResponseError):
        uploader.run()

    assert uploader.state is UploadState.FAILED
    assert uploader.offset == 0


class _SlowProgressHandler(logging.Handler):
    """Holds up the first progress line until the middle range is allowed to fail."""

    def __init__(self, release):
        super().__init__(logging.INFO)
        self.release_event = release

    def emit(self, record):
        if record.getMessage().startswith("[") and not self.release_event.is_set():
            self.release_event.set()
            time.sleep(0.2)


def test_concurrent_cursor_stops_at_failed_range(tmp_path):
    local = _write(tmp_path / "f.pdf", 30)
    release = threading.Event()

    def upload_range(data, offset, length, **kwargs):
        if offset == 10:
            release.wait(5)
            raise HttpResponseError(message="boom")
        return {"content_md5": hashlib.md5(data).digest()}

    file_client = Mock()
    file_client.upload_range.side_effect = upload_range

    pool_logger = logging.getLogger("tests.share_direct.pool")
    pool_logger.setLevel(logging.INFO)
    pool_logger.propagate = False
    handler = _SlowProgressHandler(release)
    pool_logger.addHandler(handler)
    try:
        uploader = RangeUploader(file_client, local, pool_logger, range_size=10, concurrency=3)
        with pytest.raises(HttpResponseError):
            uploader.run()
    finally:
        pool_logger.removeHandler(handler)

    assert file_client.upload_range.call_count == 3
    assert uploader.state is UploadState.FAILED
    assert uploader.offset == 10
