#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Zenon Validator Troubleshooter
==============================
Diagnostic report tool for operators of a go-zenon validator node.
Collects system, service, RPC and log information into a single report,
bundles it with the node logs and optionally delivers it to Telegram.

License: MIT
Python: 3.8+

Features:
- Checks required system tools and installs missing ones (apt, yum, dnf)
- OS release, node ports, running services, firewall and disk usage
- go-zenon service status, journal tail and last Momentum entry
- stats.* JSON-RPC probe against the node API
- Compressed log bundle with optional Telegram upload
- Dependencies: psutil, requests, python-dotenv
"""

from __future__ import annotations
import argparse
import contextlib
import glob
import io
import json
import logging
import os
import re
import shutil
import socket
import subprocess
import sys
import tarfile
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import psutil
import requests
import urllib3
from dotenv import dotenv_values

# =============================================================================
# CONSTANTS
# =============================================================================

VERSION = "1.0.0"
LOG_FORMAT = "[%(levelname)s] %(message)s"

REPORT_NAME = "troubleshoot_zenon.txt"
LOGS_DIRNAME = "logs"
ARCHIVE_NAME = "troubleshoot_zenon.txt.gz"

DEFAULT_ENDPOINT = "127.0.0.1:35997"
DEFAULT_SERVICE = "go-zenon.service"
DEFAULT_CREDENTIALS = ".env.gpg"
ENV_CREDENTIALS = "env"

NODE_PORTS = (35995, 35997, 35998)
NODE_LOG_FILES = (
    "/root/.znn/log/zenon.log",
    "/root/.znn/log/error/zenon.error.log",
)

RPC_METHODS = ("stats.syncInfo", "stats.processInfo", "stats.networkInfo")
RPC_REQUEST_ID = 40
RPC_TIMEOUT = 10
# Single-byte reads keep each body read to one recv, so the deadline holds
RPC_READ_SIZE = 1

JOURNAL_TAIL_LINES = 100
MOMENTUM_MARKER = "Momentum"

TELEGRAM_API = "https://api.telegram.org"
TELEGRAM_CAPTION = "Zenon Validator Troubleshooting Report"
TELEGRAM_OK_MARKER = '"ok":true'
TELEGRAM_TOKEN_VAR = "TELEGRAM_BOT_TOKEN"
TELEGRAM_CHAT_VAR = "TELEGRAM_CHAT_ID"
UPLOAD_TIMEOUT = 60

# Executable -> package providing it
REQUIRED_COMMANDS: Dict[str, str] = {
    "netstat": "net-tools",
    "ss": "iproute2",
    "lsb_release": "lsb-release",
    "journalctl": "systemd",
    "gpg": "gnupg",
}

# Probe order matters: first match wins
PACKAGE_MANAGERS: List[Tuple[str, str]] = [
    ("apt-get", "apt"),
    ("yum", "yum"),
    ("dnf", "dnf"),
]

logger = logging.getLogger(__name__)

Runner = Callable[..., Tuple[int, str, str]]
Which = Callable[[str], Optional[str]]


class SetupError(Exception):
    """Fatal setup failure; the run is aborted with a non-zero exit code."""

# =============================================================================
# UTILITIES
# =============================================================================

def run_command(cmd: List[str], timeout: Optional[int] = 120) -> Tuple[int, str, str]:
    """Execute a command safely and return (returncode, stdout, stderr)."""
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            text=True,
            check=True
        )
        return proc.returncode, proc.stdout.rstrip("\n"), proc.stderr.strip()
    except subprocess.CalledProcessError as e:
        return e.returncode, (e.stdout or "").rstrip("\n"), (e.stderr or "").strip()
    except subprocess.TimeoutExpired:
        return 124, "", f"Command timed out after {timeout}s"
    except FileNotFoundError:
        return 127, "", f"Command not found: {cmd[0]}"
    except OSError as e:
        return 1, "", str(e)

def privileged(cmd: List[str], which: Which = shutil.which) -> List[str]:
    """Prefix a command with sudo when not running as root."""
    is_root = hasattr(os, "geteuid") and os.geteuid() == 0
    if not is_root and which("sudo"):
        return ["sudo"] + cmd
    return cmd

def prompt(message: str, input_func: Callable[[str], str] = input) -> str:
    """Read one line from the operator; EOF counts as an empty answer."""
    try:
        return input_func(message)
    except EOFError:
        return ""

def normalize_endpoint(raw: Optional[str]) -> str:
    """Turn operator input into the RPC URL, defaulting to the local node."""
    value = (raw or "").strip() or DEFAULT_ENDPOINT
    if re.match(r"^https?://", value):
        return value
    return f"http://{value}"

def bytes_to_human(bytes_val: float) -> str:
    """Convert bytes to human-readable format."""
    if bytes_val < 0:
        raise ValueError("Bytes value cannot be negative.")
    for unit in ['B', 'K', 'M', 'G', 'T']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}P"

def safe_get(func, default: Any = None) -> Any:
    """Safely execute a function and return default on error."""
    try:
        return func()
    except Exception as e:
        logger.debug(f"Safe_get error: {e}")
        return default

def find_last_marker(text: str, marker: str) -> Optional[str]:
    """Return the last line of text containing marker, or None."""
    for line in reversed(text.splitlines()):
        if marker in line:
            return line
    return None

# =============================================================================
# REPORT BUFFER
# =============================================================================

class Report:
    """Ordered report lines, echoed to the console and appended to disk as they arrive."""

    def __init__(self, path: str, echo: bool = True):
        self.path = os.path.abspath(path)
        self.echo = echo
        self.lines: List[str] = []
        self._fh: Optional[io.TextIOBase] = None

    def __enter__(self) -> "Report":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        self._fh = open(self.path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def write(self, text: str = "", echo: Optional[bool] = None) -> None:
        lines = str(text).splitlines() or [""]
        self.lines.extend(lines)
        if self._fh is not None:
            self._fh.write("\n".join(lines) + "\n")
            self._fh.flush()
        if (self.echo if echo is None else echo):
            print(text)

    def section(self, title: str) -> None:
        self.write("")
        self.write(f"========== {title} ==========")
        self.write("")

    def output(self, out: str, err: str = "") -> None:
        """Append raw command output; stderr follows stdout like a terminal would show it."""
        if out:
            self.write(out)
        if err:
            self.write(err)


class ReportLogHandler(logging.Handler):
    """Mirror log records into the report file without echoing them twice."""

    def __init__(self, report: Report):
        super().__init__()
        self.report = report
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.report.write(self.format(record), echo=False)
        except Exception:
            self.handleError(record)


@contextlib.contextmanager
def mirror_logs(report: Report) -> Iterator[ReportLogHandler]:
    """Copy this tool's log records into the report while it is open.

    Only the module logger is attached; third-party records (urllib3 logs
    request paths, and the Telegram path carries the bot token) never reach
    the file.
    """
    handler = ReportLogHandler(report)
    logger.addHandler(handler)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)

def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    # Third-party loggers stay at INFO so their debug lines never print the bot token
    logger.setLevel(logging.DEBUG if verbose else logging.NOTSET)

# =============================================================================
# CONFIGURATION & CREDENTIALS
# =============================================================================

@dataclass
class RunConfig:
    """Everything the run needs, fixed before the first stage starts."""
    endpoint: Optional[str] = None
    auto_install: Optional[bool] = None
    credential_source: str = DEFAULT_CREDENTIALS
    workdir: str = field(default_factory=os.getcwd)
    service: str = DEFAULT_SERVICE
    verbose: bool = False

    @property
    def report_path(self) -> str:
        return os.path.join(self.workdir, REPORT_NAME)

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.workdir, LOGS_DIRNAME)

    @property
    def archive_path(self) -> str:
        return os.path.join(self.logs_dir, ARCHIVE_NAME)

    @property
    def credentials_path(self) -> str:
        if self.credential_source == ENV_CREDENTIALS:
            return ENV_CREDENTIALS
        return os.path.join(self.workdir, self.credential_source)


@dataclass(repr=False)
class Credentials:
    """Telegram bot token and destination chat."""
    bot_token: str = ""
    chat_id: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def clear(self) -> None:
        self.bot_token = ""
        self.chat_id = ""

    def __repr__(self) -> str:
        return f"Credentials(complete={self.complete})"


@contextlib.contextmanager
def credential_scope(credentials: Credentials) -> Iterator[Credentials]:
    """Hand out credentials for the run and scrub them, and the env vars, afterwards."""
    try:
        yield credentials
    finally:
        credentials.clear()
        os.environ.pop(TELEGRAM_TOKEN_VAR, None)
        os.environ.pop(TELEGRAM_CHAT_VAR, None)

def load_credentials(source: str, runner: Runner = run_command, report: Optional[Report] = None,
                     credentials: Optional[Credentials] = None) -> Credentials:
    """Load the Telegram credential pair from a gpg-encrypted dotenv file or the environment.

    Fills and returns credentials (a new object when none is given), so a
    caller can load straight into a credential_scope.
    A missing bundle is not an error: delivery is simply skipped later on.
    A bundle that fails to decrypt raises SetupError.
    """
    credentials = Credentials() if credentials is None else credentials
    say = report.write if report is not None else print

    if source == ENV_CREDENTIALS:
        credentials.bot_token = os.environ.get(TELEGRAM_TOKEN_VAR, "")
        credentials.chat_id = os.environ.get(TELEGRAM_CHAT_VAR, "")
        return credentials

    name = os.path.basename(source)
    if not os.path.isfile(source):
        say(f"Encrypted {name} file not found. Skipping sending report to Telegram.")
        return credentials

    say(f"Please enter the password to decrypt the {name} file:")
    rc, out, _ = runner(["gpg", "--quiet", "--decrypt", source], timeout=None)
    if rc != 0:
        raise SetupError(f"Failed to decrypt {name} file. Exiting.")

    values = dotenv_values(stream=io.StringIO(out))
    credentials.bot_token = values.get(TELEGRAM_TOKEN_VAR) or ""
    credentials.chat_id = values.get(TELEGRAM_CHAT_VAR) or ""
    return credentials

# =============================================================================
# DEPENDENCY INSTALLER
# =============================================================================

def find_missing_packages(required: Dict[str, str], which: Which = shutil.which) -> List[str]:
    """Packages whose executable is not on PATH, de-duplicated, in map order."""
    missing: List[str] = []
    for cmd, pkg in required.items():
        if which(cmd) is None and pkg not in missing:
            missing.append(pkg)
    return missing


class PackageInstaller:
    """Detect the host package manager and install system packages through it."""

    def __init__(self, runner: Runner = run_command, which: Which = shutil.which,
                 input_func: Callable[[str], str] = input):
        self.runner = runner
        self.which = which
        self.input_func = input_func

    def detect_manager(self) -> Optional[str]:
        for executable, name in PACKAGE_MANAGERS:
            if self.which(executable):
                return name
        return None

    def install_commands(self, manager: str, packages: List[str]) -> List[List[str]]:
        if manager == "apt":
            cmds = [["apt-get", "update"], ["apt-get", "install", "-y"] + packages]
        else:
            cmds = [[manager, "install", "-y"] + packages]
        return [privileged(cmd, self.which) for cmd in cmds]

    def install(self, manager: str, packages: List[str], report: Report) -> bool:
        for cmd in self.install_commands(manager, packages):
            rc, out, err = self.runner(cmd, timeout=None)
            report.output(out)
            if rc != 0:
                logger.error(f"✗ {' '.join(cmd)} failed ({rc}): {err}")
                return False
        logger.info(f"✓ Installed {' '.join(packages)}")
        return True

def ensure_dependencies(report: Report, installer: PackageInstaller,
                        auto_install: Optional[bool] = None,
                        required: Optional[Dict[str, str]] = None) -> None:
    """Check required system tools and install missing ones after confirmation.

    auto_install=None asks the operator, True counts as a confirmation given
    up front, False refuses. Raises SetupError when packages stay missing.
    """
    required = REQUIRED_COMMANDS if required is None else required
    report.write("Checking for required commands and installing missing packages...")

    missing = find_missing_packages(required, installer.which)
    if not missing:
        report.write("All required commands are available.")
        return

    report.write(f"The following packages are missing: {' '.join(missing)}")
    manager = installer.detect_manager()
    if not manager:
        raise SetupError("Could not detect package manager. Please install the missing packages manually.")
    report.write(f"Detected package manager: {manager}")

    if auto_install is None:
        answer = prompt("Do you want to install the missing packages? [y/N]: ", installer.input_func)
        confirmed = re.fullmatch(r"[Yy]", answer) is not None
    else:
        confirmed = auto_install
    if not confirmed:
        raise SetupError("Cannot proceed without installing the required packages. Exiting.")

    if not installer.install(manager, missing, report):
        raise SetupError(f"Failed to install packages: {' '.join(missing)}. Exiting.")

# =============================================================================
# SYSTEM INSPECTION
# =============================================================================

class SystemInspector:
    """Read-only host checks, each appended raw to the report under its own header."""

    def __init__(self, report: Report, runner: Runner = run_command, which: Which = shutil.which,
                 release_glob: str = "/etc/*release", ports: Sequence[int] = NODE_PORTS):
        self.report = report
        self.runner = runner
        self.which = which
        self.release_glob = release_glob
        self.ports = tuple(ports)
        self.errors: List[str] = []

    def inspect_all(self) -> List[str]:
        """Run all checks in order; a failing check never stops the others."""
        steps = [
            self.check_os_version,
            self.check_open_ports,
            self.check_running_services,
            self.check_firewall,
            self.check_disk_usage,
        ]
        for step in steps:
            try:
                step()
            except Exception as e:
                self.log_step_error(step.__name__, str(e))
        return self.errors

    def log_step_error(self, step: str, error: str) -> None:
        err_msg = f"[{step}] {error}"
        logger.error(err_msg)
        self.errors.append(err_msg)

    def check_os_version(self) -> None:
        self.report.section("1. Checking Linux Version")
        rc, out, _ = self.runner(["lsb_release", "-a"])
        if rc == 0 and out:
            self.report.write(out)
        else:
            self.report.write(self._read_release_files())
        rc, out, err = self.runner(["uname", "-a"])
        self.report.output(out, err)

    def _read_release_files(self) -> str:
        chunks = []
        for path in sorted(glob.glob(self.release_glob)):
            if os.path.isfile(path):
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    chunks.append(f.read().rstrip("\n"))
        return "\n".join(chunks) if chunks else "No release information found."

    def check_open_ports(self) -> None:
        label = ", ".join(str(p) for p in self.ports)
        self.report.section(f"2. Checking Open Ports ({label})")
        self.report.write("Using ss or netstat command:")
        pattern = re.compile(":(" + "|".join(str(p) for p in self.ports) + ")")

        for tool in ("ss", "netstat"):
            if not self.which(tool):
                continue
            rc, out, err = self.runner(privileged([tool, "-tulpn"], self.which))
            matches = [line for line in out.splitlines() if pattern.search(line)]
            if matches:
                self.report.write("\n".join(matches))
            else:
                self.report.write(f"No sockets found on ports {label}.")
            if rc != 0 and err:
                self.report.write(err)
            return

        self.report.write("Neither ss nor netstat commands are available.")
        self._list_ports_with_psutil()

    def _list_ports_with_psutil(self) -> None:
        try:
            conns = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            self.report.write("Listing sockets through psutil requires root privileges.")
            return

        rows = []
        for conn in conns:
            if not conn.laddr or conn.laddr.port not in self.ports:
                continue
            is_udp = conn.type == socket.SOCK_DGRAM
            if not is_udp and conn.status != psutil.CONN_LISTEN:
                continue
            proto = "udp" if is_udp else "tcp"
            rows.append(f"{proto:<5} {conn.laddr.ip}:{conn.laddr.port:<8} {conn.status:<10} pid={conn.pid}")
        self.report.write("Listening sockets (psutil):")
        self.report.write("\n".join(sorted(rows)) if rows else f"No sockets found on ports {', '.join(str(p) for p in self.ports)}.")

    def check_running_services(self) -> None:
        self.report.section("3. Checking Running Services")
        rc, out, err = self.runner(["systemctl", "list-units", "--type=service", "--state=running"])
        self.report.output(out, err)

    def check_firewall(self) -> None:
        self.report.section("4. Checking UFW Status")
        if not self.which("ufw"):
            self.report.write("ufw command not found. Skipping firewall status.")
            return
        rc, out, err = self.runner(privileged(["ufw", "status", "verbose"], self.which))
        self.report.output(out, err)

    def check_disk_usage(self) -> None:
        self.report.section("5. Checking Disk Usage")
        rc, out, err = self.runner(["df", "-h"])
        if rc == 0:
            self.report.output(out, err)
            return
        logger.warning(f"df failed ({rc}): {err}; falling back to psutil")
        self.report.write(f"{'Filesystem':<24} {'Size':>8} {'Used':>8} {'Avail':>8} {'Use%':>5} Mounted on")
        for part in psutil.disk_partitions(all=False):
            usage = safe_get(lambda: psutil.disk_usage(part.mountpoint))
            if not usage:
                continue
            self.report.write(
                f"{part.device:<24} {bytes_to_human(usage.total):>8} {bytes_to_human(usage.used):>8} "
                f"{bytes_to_human(usage.free):>8} {usage.percent:>4.0f}% {part.mountpoint}"
            )

# =============================================================================
# SERVICE HEALTH
# =============================================================================

class ServiceInspector:
    """systemd status and journal access for one unit."""

    def __init__(self, service: str = DEFAULT_SERVICE, runner: Runner = run_command,
                 which: Which = shutil.which):
        self.service = service
        self.runner = runner
        self.which = which

    @property
    def display_name(self) -> str:
        if self.service.endswith(".service"):
            return self.service[:-len(".service")]
        return self.service

    def is_active(self) -> bool:
        rc, _, _ = self.runner(["systemctl", "is-active", "--quiet", self.service])
        return rc == 0

    def tail(self, lines: int = JOURNAL_TAIL_LINES) -> Tuple[int, str, str]:
        return self.runner(privileged(["journalctl", "-u", self.service, "-n", str(lines)], self.which))

    def can_search(self) -> bool:
        return self.which("journalctl") is not None

    def last_marker(self, marker: str) -> Optional[str]:
        """Most recent journal line containing marker across the unit's full history."""
        rc, out, err = self.runner(
            privileged(["journalctl", "-u", self.service, "--no-pager"], self.which),
            timeout=None,
        )
        if rc != 0:
            logger.warning(f"journalctl exited with {rc}: {err}")
        return find_last_marker(out, marker)

def report_service_status(report: Report, service: ServiceInspector) -> bool:
    report.section(f"6. Checking if {service.display_name} service is running")
    active = service.is_active()
    if active:
        report.write(f"{service.service} is running.")
    else:
        report.write(f"{service.service} is NOT running.")

    report.section(f"7. Printing last {JOURNAL_TAIL_LINES} log lines for {service.display_name} service")
    _, out, err = service.tail(JOURNAL_TAIL_LINES)
    report.output(out, err)
    return active

def report_last_marker(report: Report, service: ServiceInspector, marker: str = MOMENTUM_MARKER) -> Optional[str]:
    report.section(f"9. Reporting Last '{marker}' Entry from {service.display_name} Service Logs")
    if not service.can_search():
        report.write("journalctl command not found. Cannot search service logs.")
        return None

    report.write(f"Searching for the last '{marker}' entry in {service.display_name} service logs...")
    entry = service.last_marker(marker)
    if entry:
        report.write(f"Last '{marker}' log entry from {service.display_name} service:")
        report.write(entry)
    else:
        report.write(f"No '{marker}' entries found in {service.display_name} service logs.")
    return entry

# =============================================================================
# RPC PROBE
# =============================================================================

@dataclass
class ProbeResult:
    method: str
    ok: bool
    payload: Any = None
    error: Optional[str] = None
    raw: Optional[str] = None

def build_rpc_request(method: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": RPC_REQUEST_ID, "method": method, "params": []}


class RpcProbe:
    """Single-attempt stats.* queries against the node's JSON-RPC endpoint."""

    def __init__(self, url: str, methods: Sequence[str] = RPC_METHODS, timeout: float = RPC_TIMEOUT):
        self.url = url
        self.methods = tuple(methods)
        self.timeout = timeout

    def call(self, method: str) -> ProbeResult:
        failed = f"Error: Failed to get response from {method}. The request timed out or failed."
        try:
            body = self._post(method)
        except requests.RequestException as e:
            logger.debug(f"{method} request to {self.url} failed: {e}")
            return ProbeResult(method, False, error=failed)

        if not body.strip():
            return ProbeResult(method, False, error=failed)
        try:
            payload = json.loads(body)
        except ValueError:
            return ProbeResult(method, False, error=f"Error: Invalid JSON response from {method}.", raw=body)
        return ProbeResult(method, True, payload=payload, raw=body)

    def _post(self, method: str) -> str:
        """POST one request and read the body, all within self.timeout seconds.

        requests applies its timeout per socket operation, so the body is
        streamed and every read gets only what is left of the deadline.
        """
        deadline = time.monotonic() + self.timeout
        with requests.post(
            self.url,
            data=json.dumps(build_rpc_request(method)),
            headers={"Content-Type": "application/json", "Accept-Encoding": "identity"},
            timeout=self.timeout,
            stream=True,
        ) as resp:
            chunks = []
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise requests.exceptions.Timeout(f"{method} took longer than {self.timeout}s")
                sock = getattr(getattr(resp.raw, "connection", None), "sock", None)
                if sock is not None:
                    sock.settimeout(remaining)
                try:
                    chunk = resp.raw.read(RPC_READ_SIZE)
                except (socket.timeout, urllib3.exceptions.HTTPError) as e:
                    raise requests.exceptions.Timeout(f"{method} body read failed: {e}") from e
                if not chunk:
                    break
                chunks.append(chunk)
        return b"".join(chunks).decode(resp.encoding or "utf-8", errors="replace")

    def run(self, report: Report, section: str = "8") -> List[ProbeResult]:
        results = []
        for counter, method in enumerate(self.methods, start=1):
            report.write("")
            report.write(f"{section}.{counter}. {method}:")
            result = self.call(method)
            if result.ok:
                report.write(json.dumps(result.payload, indent=2, ensure_ascii=False))
            else:
                report.write(result.error)
                if result.raw is not None:
                    report.write(f"Response: {result.raw}")
            results.append(result)
        return results

# =============================================================================
# LOG AGGREGATION
# =============================================================================

class ArchiveWriter:
    """Stage the report and node logs in the logs directory and tar+gzip them."""

    def __init__(self, logs_dir: str, archive_name: str = ARCHIVE_NAME,
                 log_files: Sequence[str] = NODE_LOG_FILES):
        self.logs_dir = os.path.abspath(logs_dir)
        self.archive_path = os.path.join(self.logs_dir, archive_name)
        self.log_files = tuple(log_files)

    def collect(self, report_path: str, report: Report) -> List[str]:
        """Copy the report and every node log that exists; returns the staged paths."""
        os.makedirs(self.logs_dir, exist_ok=True)
        staged = [self._stage(report_path)]
        for log_file in self.log_files:
            if not os.path.isfile(log_file):
                report.write(f"Log file not found: {log_file}")
                continue
            try:
                staged.append(self._stage(log_file))
            except OSError as e:
                report.write(f"Could not copy log file {log_file}: {e}")
        return staged

    def _stage(self, src: str) -> str:
        dst = os.path.join(self.logs_dir, os.path.basename(src))
        shutil.copy2(src, dst)
        return dst

    def compress(self, staged: List[str]) -> bool:
        try:
            with tarfile.open(self.archive_path, "w:gz") as tar:
                for path in staged:
                    tar.add(path, arcname=os.path.basename(path))
        except (OSError, tarfile.TarError) as e:
            logger.error(f"Failed to create {self.archive_path}: {e}")
            self._discard_archive()
            return False

        if not self.verify(staged):
            logger.error(f"Archive {self.archive_path} failed verification")
            self._discard_archive()
            return False
        return True

    def verify(self, staged: List[str]) -> bool:
        """The archive must reopen and hold exactly the staged files."""
        try:
            with tarfile.open(self.archive_path, "r:gz") as tar:
                names = sorted(tar.getnames())
        except (OSError, tarfile.TarError) as e:
            logger.error(f"Cannot read back {self.archive_path}: {e}")
            return False
        return names == sorted(os.path.basename(p) for p in staged)

    def cleanup(self, staged: List[str]) -> None:
        for path in staged:
            with contextlib.suppress(FileNotFoundError):
                os.remove(path)

    def _discard_archive(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.archive_path)

def aggregate_logs(report: Report, writer: ArchiveWriter, report_path: str) -> bool:
    """Bundle the report and logs; staged copies are removed only once the archive verifies."""
    staged = writer.collect(report_path, report)
    if writer.compress(staged):
        writer.cleanup(staged)
        report.write(f"Troubleshooting data collected and compressed to {writer.archive_path}")
        return True

    report.write("Error: Failed to create compressed file.")
    report.write(f"Collected files were left in {writer.logs_dir}")
    return False

# =============================================================================
# REPORT DELIVERY
# =============================================================================

class TelegramReporter:
    """Upload the archive with the Telegram Bot API sendDocument call."""

    def __init__(self, api_base: str = TELEGRAM_API, caption: str = TELEGRAM_CAPTION,
                 timeout: float = UPLOAD_TIMEOUT):
        self.api_base = api_base.rstrip("/")
        self.caption = caption
        self.timeout = timeout

    def send(self, archive_path: str, credentials: Credentials) -> Tuple[bool, str]:
        url = f"{self.api_base}/bot{credentials.bot_token}/sendDocument"
        try:
            with open(archive_path, "rb") as fh:
                resp = requests.post(
                    url,
                    data={"chat_id": credentials.chat_id, "caption": self.caption},
                    files={"document": (os.path.basename(archive_path), fh)},
                    timeout=self.timeout,
                )
        except requests.RequestException as e:
            # Exception text carries the URL, and with it the token
            return False, str(e).replace(credentials.bot_token, "***")
        return TELEGRAM_OK_MARKER in resp.text, resp.text

    def deliver(self, report: Report, archive_path: str, credentials: Credentials) -> bool:
        """Best-effort single upload; the archive is deleted only after Telegram confirms it."""
        if not credentials.complete:
            report.write("Telegram API keys not set or incomplete. Skipping sending report to Telegram.")
            report.write(f"The troubleshooting report is available at {archive_path}")
            return False
        if not os.path.isfile(archive_path):
            report.write(f"Compressed report {archive_path} not found. Skipping sending report to Telegram.")
            return False

        report.write("Sending compressed report to Telegram...")
        ok, body = self.send(archive_path, credentials)
        if ok:
            report.write("Report sent to Telegram successfully.")
            os.remove(archive_path)
            report.write("Temporary files have been cleaned up.")
            return True

        report.write("Failed to send report to Telegram. Response:")
        report.write(body)
        report.write(f"The compressed file is available at {archive_path}")
        return False

# =============================================================================
# MAIN CLI
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> RunConfig:
    parser = argparse.ArgumentParser(
        prog="znn-troubleshoot",
        description="Collect a troubleshooting report for a Zenon validator node.",
    )
    parser.add_argument("--endpoint", help=f"node RPC address, prompted for when omitted (default: {DEFAULT_ENDPOINT})")
    install = parser.add_mutually_exclusive_group()
    install.add_argument("--auto-install", dest="auto_install", action="store_const", const=True,
                         help="install missing packages without asking")
    install.add_argument("--no-install", dest="auto_install", action="store_const", const=False,
                         help="never install missing packages")
    parser.add_argument("--credentials", default=DEFAULT_CREDENTIALS,
                        help=f"gpg-encrypted dotenv file with Telegram keys, or '{ENV_CREDENTIALS}' "
                             f"to read them from the environment (default: {DEFAULT_CREDENTIALS})")
    parser.add_argument("--workdir", default=os.getcwd(), help="directory for the report and logs")
    parser.add_argument("--service", default=DEFAULT_SERVICE, help="systemd unit of the node")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    return RunConfig(
        endpoint=args.endpoint,
        auto_install=args.auto_install,
        credential_source=args.credentials,
        workdir=os.path.abspath(args.workdir),
        service=args.service,
        verbose=args.verbose,
    )

def prepare_workspace(config: RunConfig) -> None:
    """Drop outputs of a previous run and make sure the logs directory exists."""
    for path in (config.report_path, config.archive_path):
        if os.path.isfile(path):
            os.remove(path)
    os.makedirs(config.logs_dir, exist_ok=True)

def resolve_endpoint(config: RunConfig, input_func: Callable[[str], str] = input) -> str:
    raw = config.endpoint
    if raw is None:
        raw = prompt(f"Enter the IP address and port for the RPC requests (default: {DEFAULT_ENDPOINT}): ",
                     input_func)
    return normalize_endpoint(raw)

def run(config: RunConfig, input_func: Callable[[str], str] = input,
        runner: Runner = run_command, which: Which = shutil.which,
        log_files: Sequence[str] = NODE_LOG_FILES,
        reporter: Optional[TelegramReporter] = None) -> int:
    """Run every stage in order; returns the process exit code."""
    prepare_workspace(config)
    url = resolve_endpoint(config, input_func)

    with Report(config.report_path) as report, mirror_logs(report), \
            credential_scope(Credentials()) as credentials:
        try:
            load_credentials(config.credentials_path, runner, report, credentials)
            ensure_dependencies(report, PackageInstaller(runner, which, input_func), config.auto_install)
        except SetupError as e:
            logger.error(str(e))
            return 1

        report.section("Zenon Validator Troubleshooting Script")
        SystemInspector(report, runner, which).inspect_all()

        service = ServiceInspector(config.service, runner, which)
        report_service_status(report, service)

        report.section("8. Executing stats Commands to Check Zenon Node Status")
        RpcProbe(url).run(report)

        report_last_marker(report, service, MOMENTUM_MARKER)

        writer = ArchiveWriter(config.logs_dir, log_files=log_files)
        aggregate_logs(report, writer, config.report_path)

        (reporter or TelegramReporter()).deliver(report, writer.archive_path, credentials)

        report.write("")
        report.write("========== End of Troubleshooting Script ==========")
    return 0

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    config = parse_args(argv)
    configure_logging(config.verbose)

    print(f"\n{'='*70}")
    print(f"  Zenon Validator Troubleshooter v{VERSION}")
    print(f"{'='*70}\n")
    return run(config)

def cli() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\n[!] Interrupted by user. Exiting...")
        sys.exit(130)
    except Exception as e:
        logger.critical(f"[FATAL ERROR] {e}")
        import traceback
        traceback.print_exc(file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    cli()
