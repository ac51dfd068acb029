import logging
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import Mock, patch

import pytest
import requests

import znn_troubleshoot as zt


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "troubleshoot_zenon.txt.gz"
    path.write_bytes(b"\x1f\x8b fake")
    return str(path)


def respond(text):
    resp = Mock()
    resp.text = text
    return resp


def test_success_removes_archive(report, archive):
    creds = zt.Credentials("123:abc", "-100200")
    with patch.object(zt.requests, "post", return_value=respond('{"ok":true,"result":{}}')) as post:
        assert zt.TelegramReporter().deliver(report, archive, creds)

    args, kwargs = post.call_args
    assert args == ("https://api.telegram.org/bot123:abc/sendDocument",)
    assert kwargs["data"] == {"chat_id": "-100200", "caption": "Zenon Validator Troubleshooting Report"}
    assert kwargs["files"]["document"][0] == "troubleshoot_zenon.txt.gz"
    assert not os.path.exists(archive)
    assert "Report sent to Telegram successfully." in report.lines


def test_rejected_upload_keeps_archive(report, archive):
    body = '{"ok":false,"error_code":401,"description":"Unauthorized"}'
    with patch.object(zt.requests, "post", return_value=respond(body)):
        assert not zt.TelegramReporter().deliver(report, archive, zt.Credentials("bad", "1"))

    assert os.path.exists(archive)
    assert body in report.lines
    assert f"The compressed file is available at {archive}" in report.lines


def test_transport_error_keeps_archive_and_hides_token(report, archive):
    error = requests.exceptions.ConnectionError("Max retries exceeded with url: /botsecret-token/sendDocument")
    with patch.object(zt.requests, "post", side_effect=error):
        assert not zt.TelegramReporter().deliver(report, archive, zt.Credentials("secret-token", "1"))

    assert os.path.exists(archive)
    assert not any("secret-token" in line for line in report.lines)


@pytest.mark.parametrize("creds", [zt.Credentials(), zt.Credentials("tok", ""), zt.Credentials("", "42")])
def test_incomplete_credentials_skip_upload(report, archive, creds):
    with patch.object(zt.requests, "post") as post:
        assert not zt.TelegramReporter().deliver(report, archive, creds)

    post.assert_not_called()
    assert os.path.exists(archive)
    assert f"The troubleshooting report is available at {archive}" in report.lines


def test_missing_archive_skips_upload(report, tmp_path):
    with patch.object(zt.requests, "post") as post:
        assert not zt.TelegramReporter().deliver(report, str(tmp_path / "none.gz"), zt.Credentials("t", "c"))
    post.assert_not_called()


class TelegramStub(BaseHTTPRequestHandler):
    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        body = b'{"ok":true,"result":{"message_id":1}}'
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def telegram_stub():
    server = ThreadingHTTPServer(("127.0.0.1", 0), TelegramStub)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def debug_root_logger():
    root = logging.getLogger()
    previous = root.level
    root.setLevel(logging.DEBUG)
    yield root
    root.setLevel(previous)


def test_verbose_delivery_keeps_token_out_of_report(tmp_path, archive, telegram_stub, debug_root_logger):
    path = tmp_path / zt.REPORT_NAME
    with zt.Report(str(path), echo=False) as report, zt.mirror_logs(report):
        zt.logger.info("delivery starting")
        sent = zt.TelegramReporter(api_base=telegram_stub).deliver(
            report, archive, zt.Credentials("SECRETTOKEN123", "42"))

    assert sent
    text = path.read_text(encoding="utf-8")
    assert "[INFO] delivery starting" in text
    assert "Report sent to Telegram successfully." in text
    assert "SECRETTOKEN123" not in text


def test_verbose_logging_leaves_third_party_loggers_at_info(debug_root_logger):
    debug_root_logger.setLevel(logging.WARNING)
    try:
        zt.configure_logging(verbose=True)

        assert zt.logger.getEffectiveLevel() == logging.DEBUG
        assert not logging.getLogger("urllib3.connectionpool").isEnabledFor(logging.DEBUG)
    finally:
        zt.logger.setLevel(logging.NOTSET)
