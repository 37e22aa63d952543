#!/usr/bin/env python3
"""
===============================================================================
                               CHROME UPDATE
===============================================================================
Version: 1.0.0

Unattended check-then-fix pair for Google Chrome on Windows endpoints.

Features:
• Multi-probe install discovery (install paths, uninstall keys, App Paths)
• Winget version query with a JSON version-feed fallback
• Winget upgrade with a Google Update fallback on installer mismatch
• Tri-state exit codes for schedulers and a single-line run summary
• Rich-based console output and JSON output for orchestrators
"""

import argparse
import http.client
import fnmatch
import json
import logging
import os
import platform
import re
import shutil
import subprocess
import sys
import urllib.error
import urllib.request

# Force UTF-8 encoding for standard output to avoid UnicodeEncodeError on Windows
if (getattr(sys.stdout, "encoding", None) or "").lower() != "utf-8":
    try:
        sys.stdout.reconfigure(encoding="utf-8")
    except AttributeError:
        pass

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from itertools import zip_longest
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

__version__ = "1.0.0"

console = Console()
logger = logging.getLogger("chrome_update")

USER_AGENT = f"chrome-update/{__version__}"

# Tri-state process exit codes shared by the detect and remediate entry points.
EXIT_OK = 0
EXIT_WARNING = 1
EXIT_NOTICE = 2

# winget exit code observed when the installed copy was deployed by an
# installer technology winget cannot upgrade in place (0x8A15002B).
INSTALLER_TECHNOLOGY_MISMATCH = -1978335189

DEFAULT_SENTINEL_VERSION = "999.0.0.0"
# OmahaProxy is retired; fleets point sources.feed_url at a mirror of all.json.
DEFAULT_FEED_URL = "https://omahaproxy.appspot.com/all.json"


# ═══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════════


class ChromeUpdateError(Exception):
    """Base class for errors raised by chrome_update components."""


class InvalidVersionFormat(ChromeUpdateError, ValueError):
    """A version string is not a dotted sequence of non-negative integers."""


class ProbeError(ChromeUpdateError):
    """The environment prevented a discovery probe from completing."""


class ExecutionError(ChromeUpdateError):
    """An update tool could not be launched."""


# ═══════════════════════════════════════════════════════════════════════════════
# CORE DATA MODELS
# ═══════════════════════════════════════════════════════════════════════════════


class Comparison(Enum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


class UpdateOutcome(Enum):
    """Result of a single detect or remediate run."""

    UP_TO_DATE = "UpToDate"
    NEEDS_UPDATE = "NeedsUpdate"
    NOT_INSTALLED = "NotInstalled"
    TOOL_MISSING = "ToolMissing"
    VERSION_UNKNOWN = "VersionUnknown"
    UPDATE_SUCCEEDED = "UpdateSucceeded"
    UPDATE_FAILED = "UpdateFailed"


class VersionSource(Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    SENTINEL = "sentinel"


class UnknownVersionPolicy(Enum):
    """What to do when no source can report the latest version."""

    CONSERVATIVE = "conservative"
    ASSUME_OUTDATED = "assume_outdated"


@dataclass(frozen=True)
class InstalledApp:
    install_path: str
    display_version: str
    probe: str = ""


@dataclass(frozen=True)
class ToolLocation:
    executable_path: str
    probe: str = ""


@dataclass(frozen=True)
class Unavailable:
    """A version source could not produce a version."""

    reason: str
    environment: bool = False


@dataclass(frozen=True)
class RemoteVersionInfo:
    version: str
    source: VersionSource
    source_name: str = ""


@dataclass(frozen=True)
class Detection:
    outcome: UpdateOutcome
    app: Optional[InstalledApp] = None
    tool: Optional[ToolLocation] = None
    latest: Optional[RemoteVersionInfo] = None


_EXIT_CODES = {
    UpdateOutcome.UP_TO_DATE: EXIT_OK,
    UpdateOutcome.UPDATE_SUCCEEDED: EXIT_OK,
    UpdateOutcome.NEEDS_UPDATE: EXIT_WARNING,
    UpdateOutcome.UPDATE_FAILED: EXIT_WARNING,
    UpdateOutcome.NOT_INSTALLED: EXIT_NOTICE,
    UpdateOutcome.VERSION_UNKNOWN: EXIT_NOTICE,
    UpdateOutcome.TOOL_MISSING: EXIT_NOTICE,
}


@dataclass(frozen=True)
class RunSummary:
    """Ordered facts gathered during one run plus its terminal outcome.

    ``cause`` is set when a failure has a more specific explanation, e.g.
    an ``UPDATE_FAILED`` run that had no update tool at all. The cause wins
    when mapping the run to a process exit code.
    """

    mode: str
    outcome: UpdateOutcome
    facts: Tuple[str, ...] = ()
    cause: Optional[UpdateOutcome] = None

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.cause or self.outcome]

    def render(self) -> str:
        """Single summary line for log aggregation."""
        line = f"[{self.outcome.value}]"
        if self.facts:
            line += " " + "; ".join(self.facts) + "."
        return line

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode,
            "outcome": self.outcome.value,
            "cause": self.cause.value if self.cause else None,
            "exit_code": self.exit_code,
            "facts": list(self.facts),
            "summary": self.render(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION SYSTEM
# ═══════════════════════════════════════════════════════════════════════════════


class UpdateConfig:
    """Layered configuration: built-in defaults merged with a JSON file."""

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        config_file: Optional[Path] = None,
        autoload: bool = True,
    ):
        self.config_dir = config_dir or Path.home() / ".chrome_update"
        self.config_file = config_file or self.config_dir / "config.json"
        self.log_file = self.config_dir / "chrome_update.log"

        self.settings = {
            "app": {
                "display_name": "Google Chrome",
                "package_id": "Google.Chrome",
                "process_name": "chrome.exe",
            },
            "policy": {
                "on_unknown_version": UnknownVersionPolicy.CONSERVATIVE.value,
                "sentinel_version": DEFAULT_SENTINEL_VERSION,
            },
            "performance": {
                "query_timeout_seconds": 60,
                "feed_timeout_seconds": 15,
                "probe_timeout_seconds": 30,
            },
            "sources": {
                "feed_url": DEFAULT_FEED_URL,
                "feed_os": "win",
                "feed_channel": "stable",
            },
        }
        if autoload:
            self.load()

    def load(self):
        """Load configuration from file with error handling."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded_settings = json.load(f)
                if isinstance(loaded_settings, dict):
                    self._merge_settings(self.settings, loaded_settings)
                else:
                    logger.warning(f"Ignoring config {self.config_file}: not an object")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load config: {e}")

    def _merge_settings(self, base: dict, loaded: dict):
        """Recursively merge settings."""
        for key, value in loaded.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_settings(base[key], value)
            else:
                base[key] = value

    @property
    def policy(self) -> UnknownVersionPolicy:
        raw = str(self.settings["policy"]["on_unknown_version"]).strip().lower()
        try:
            return UnknownVersionPolicy(raw.replace("-", "_"))
        except ValueError:
            logger.warning(f"Unknown on_unknown_version policy '{raw}', using conservative")
            return UnknownVersionPolicy.CONSERVATIVE

    @property
    def sentinel_version(self) -> str:
        value = str(self.settings["policy"]["sentinel_version"])
        try:
            parse_version(value)
        except InvalidVersionFormat:
            logger.warning(f"Invalid sentinel version '{value}', using {DEFAULT_SENTINEL_VERSION}")
            return DEFAULT_SENTINEL_VERSION
        return value


def setup_logging(config: UpdateConfig, verbose: bool = False):
    """Send logs to the run log file, and to stderr when verbose."""
    handlers: List[logging.Handler] = []
    try:
        config.config_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.log_file, encoding="utf-8"))
    except OSError as e:
        console.print(f"[yellow]⚠️  Cannot write log file {config.log_file}: {e}[/yellow]")

    if verbose:
        rich_handler = RichHandler(console=Console(stderr=True), show_path=False)
        rich_handler.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(rich_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# VERSION COMPARISON
# ═══════════════════════════════════════════════════════════════════════════════

_VERSION_PATTERN = re.compile(r"\d+(?:\.\d+)+")
_SEGMENT_PATTERN = re.compile(r"[0-9]+")


def parse_version(version: str) -> Tuple[int, ...]:
    """Split a dotted numeric version into integer segments.

    Raises ``InvalidVersionFormat`` for empty input or any segment that is
    not a non-negative integer ("1..2", "1.2a", "-1").
    """
    text = (version or "").strip()
    if not text:
        raise InvalidVersionFormat(f"Empty version string: {version!r}")
    segments = []
    for chunk in text.split("."):
        if not _SEGMENT_PATTERN.fullmatch(chunk):
            raise InvalidVersionFormat(f"Invalid version segment {chunk!r} in {version!r}")
        segments.append(int(chunk))
    return tuple(segments)


def compare_versions(a: str, b: str) -> Comparison:
    """Compare two versions segment by segment, padding with zeros."""
    for left, right in zip_longest(parse_version(a), parse_version(b), fillvalue=0):
        if left < right:
            return Comparison.LESS
        if left > right:
            return Comparison.GREATER
    return Comparison.EQUAL


def extract_version(text: str) -> Optional[str]:
    """Return the first dotted numeric substring of ``text``."""
    match = _VERSION_PATTERN.search(text or "")
    return match.group(0) if match else None


def _version_key(name: str) -> Tuple[int, ...]:
    found = extract_version(name)
    return parse_version(found) if found else ()


# ═══════════════════════════════════════════════════════════════════════════════
# UTILITY FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


Runner = Callable[[List[str], Optional[float]], CommandResult]


def run_process(cmd: List[str], timeout: Optional[float] = None) -> CommandResult:
    """Run ``cmd`` to completion and capture its output.

    Output is captured through pipes owned by ``subprocess.run``, which are
    closed before this returns, including on timeout. Raises ``OSError``
    when the executable cannot be launched and ``subprocess.TimeoutExpired``
    when ``timeout`` elapses. ``timeout=None`` waits indefinitely.
    """
    if platform.system() == "Windows":
        executable = shutil.which(cmd[0])
        if executable:
            cmd = [executable] + list(cmd[1:])

    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        check=False,  # exit codes are interpreted by the caller
        encoding="utf-8",
        errors="ignore",
        timeout=timeout,
        creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
    )
    return CommandResult(result.returncode, result.stdout or "", result.stderr or "")


def normalize_exit_code(code: int) -> int:
    """Interpret an exit status as a signed 32-bit value.

    Windows reports HRESULT-style codes as unsigned DWORDs, so the same
    winget failure may arrive as 2316632107 or -1978335189.
    """
    code &= 0xFFFFFFFF
    return code - 0x100000000 if code >= 0x80000000 else code


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# ═══════════════════════════════════════════════════════════════════════════════
# SYSTEM INSPECTOR
# ═══════════════════════════════════════════════════════════════════════════════

# Candidate paths: an environment variable followed by path segments. At most
# one segment may carry a wildcard; it resolves to the newest matching entry.
CandidatePath = Tuple[str, ...]

CHROME_CANDIDATES: Tuple[CandidatePath, ...] = (
    ("ProgramFiles", "Google", "Chrome", "Application", "chrome.exe"),
    ("ProgramFiles(x86)", "Google", "Chrome", "Application", "chrome.exe"),
    ("LOCALAPPDATA", "Google", "Chrome", "Application", "chrome.exe"),
)

VENDOR_UPDATER_CANDIDATES: Tuple[CandidatePath, ...] = (
    ("ProgramFiles(x86)", "Google", "Update", "GoogleUpdate.exe"),
    ("ProgramFiles", "Google", "Update", "GoogleUpdate.exe"),
    ("LOCALAPPDATA", "Google", "Update", "GoogleUpdate.exe"),
)

_DESKTOP_APP_INSTALLER = "Microsoft.DesktopAppInstaller_*_{arch}__8wekyb3d8bbwe"

_UNINSTALL_SCRIPT = r"""
$paths = @(
    'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall\*',
    'HKCU:\SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall\*',
    'HKLM:\SOFTWARE\Wow6432Node\Microsoft\Windows\CurrentVersion\Uninstall\*'
)
Get-ItemProperty -Path $paths -ErrorAction SilentlyContinue |
    Where-Object { $_.DisplayName -eq $name -and $_.DisplayVersion } |
    Select-Object @{n='Version';e={$_.DisplayVersion}},
                 @{n='InstallLocation';e={$_.InstallLocation}} |
    ConvertTo-Json
"""

_APP_PATHS_SCRIPT = r"""
$keys = @(
    "HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\App Paths\$exe",
    "HKCU:\SOFTWARE\Microsoft\Windows\CurrentVersion\App Paths\$exe"
)
foreach ($key in $keys) {
    $value = (Get-ItemProperty -Path $key -ErrorAction SilentlyContinue).'(default)'
    if ($value) { $value; break }
}
"""


def winget_candidates(machine: Optional[str] = None) -> Tuple[CandidatePath, ...]:
    """Well-known winget locations, native architecture first."""
    native = {"amd64": "x64", "x86_64": "x64", "arm64": "arm64", "aarch64": "arm64"}.get(
        (machine or platform.machine() or "").lower(), "x86"
    )
    archs = [native] + [a for a in ("x64", "x86") if a != native]
    candidates: List[CandidatePath] = [
        ("LOCALAPPDATA", "Microsoft", "WindowsApps", "winget.exe"),
    ]
    for arch in archs:
        candidates.append(
            ("ProgramFiles", "WindowsApps", _DESKTOP_APP_INSTALLER.format(arch=arch), "winget.exe")
        )
    return tuple(candidates)


class WindowsInspector:
    """Locates Chrome, winget and Google Update on the local machine.

    Absence is reported as ``None``. ``ProbeError`` is raised only when the
    environment prevented every probe from giving an answer, for example a
    permission error listing a directory or PowerShell being unavailable.
    """

    def __init__(
        self,
        config: UpdateConfig,
        environ: Optional[Dict[str, str]] = None,
        runner: Runner = run_process,
        which: Callable[[str], Optional[str]] = shutil.which,
        machine: Optional[str] = None,
    ):
        self.display_name = config.settings["app"]["display_name"]
        self.process_name = config.settings["app"]["process_name"]
        self.timeout = config.settings["performance"]["probe_timeout_seconds"]
        env = os.environ if environ is None else environ
        self._env = {key.upper(): value for key, value in env.items()}
        self._runner = runner
        self._which = which
        self._machine = machine

    # ── Installed application ────────────────────────────────────────

    def find_installed_app(self) -> Optional[InstalledApp]:
        return self._first_hit(
            (self._probe_install_paths, self._probe_uninstall_keys, self._probe_app_paths)
        )

    def _probe_install_paths(self) -> Optional[InstalledApp]:
        error = None
        for candidate in CHROME_CANDIDATES:
            try:
                path = self._resolve_candidate(candidate)
                if not path:
                    continue
                version = self._installed_version(path)
            except ProbeError as e:
                error = error or e
                continue
            if version:
                return InstalledApp(path, version, "install path")
            logger.debug(f"Found {path} but could not read its version")
        if error:
            raise error
        return None

    def _installed_version(self, path: str) -> Optional[str]:
        try:
            version = self._file_version(path)
        except ProbeError as e:
            logger.debug(f"File version of {path} unavailable: {e}")
            version = None
        return version or self._newest_version_folder(os.path.dirname(path))

    def _probe_uninstall_keys(self) -> Optional[InstalledApp]:
        output = self._powershell(f"$name = {_ps_quote(self.display_name)}\n{_UNINSTALL_SCRIPT}")
        if not output:
            return None
        try:
            data = json.loads(output)
        except ValueError:
            logger.debug(f"Unparsable uninstall registry output: {output[:200]}")
            return None
        entries = [data] if isinstance(data, dict) else data
        for item in entries if isinstance(entries, list) else []:
            if not isinstance(item, dict):
                continue
            version = str(item.get("Version") or "").strip()
            try:
                parse_version(version)
            except InvalidVersionFormat:
                continue
            location = str(item.get("InstallLocation") or "").strip().strip('"')
            if location and not location.lower().endswith(".exe"):
                location = os.path.join(location, self.process_name)
            return InstalledApp(location, version, "uninstall registry")
        return None

    def _probe_app_paths(self) -> Optional[InstalledApp]:
        output = self._powershell(f"$exe = {_ps_quote(self.process_name)}\n{_APP_PATHS_SCRIPT}")
        if not output:
            return None
        path = output.splitlines()[0].strip().strip('"')
        if not os.path.isfile(path):
            return None
        version = self._file_version(path)
        if version:
            return InstalledApp(path, version, "App Paths registry")
        return None

    def _file_version(self, path: str) -> Optional[str]:
        output = self._powershell(
            f"(Get-Item -LiteralPath {_ps_quote(path)}).VersionInfo.ProductVersion"
        )
        return extract_version(output) if output else None

    def _newest_version_folder(self, directory: str) -> Optional[str]:
        """Chrome keeps its binaries in a sibling folder named after the version."""
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ProbeError(f"cannot list {directory}: {e}") from e
        versions = []
        for name in names:
            try:
                key = parse_version(name)
            except InvalidVersionFormat:
                continue
            if os.path.isdir(os.path.join(directory, name)):
                versions.append((key, name))
        return max(versions)[1] if versions else None

    def is_app_running(self) -> bool:
        cmd = ["tasklist", "/FI", f"IMAGENAME eq {self.process_name}", "/NH"]
        try:
            result = self._runner(cmd, self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Cannot list processes: {e}")
            return False
        return self.process_name.lower() in result.stdout.lower()

    # ── Update tools ─────────────────────────────────────────────────

    def find_update_tool(self) -> Optional[ToolLocation]:
        path = self._which("winget")
        if path:
            return ToolLocation(path, "PATH")
        path = self._resolve_first(winget_candidates(self._machine))
        return ToolLocation(path, "install directory") if path else None

    def find_vendor_updater(self) -> Optional[ToolLocation]:
        path = self._resolve_first(VENDOR_UPDATER_CANDIDATES)
        return ToolLocation(path, "install directory") if path else None

    # ── Helpers ──────────────────────────────────────────────────────

    def _first_hit(self, probes: Sequence[Callable[[], Optional[InstalledApp]]]):
        error = None
        for probe in probes:
            try:
                found = probe()
            except ProbeError as e:
                logger.debug(f"{probe.__name__} failed: {e}")
                error = error or e
                continue
            if found:
                return found
        if error:
            raise error
        return None

    def _resolve_first(self, candidates: Sequence[CandidatePath]) -> Optional[str]:
        error = None
        for candidate in candidates:
            try:
                path = self._resolve_candidate(candidate)
            except ProbeError as e:
                error = error or e
                continue
            if path:
                return path
        if error:
            raise error
        return None

    def _resolve_candidate(self, candidate: CandidatePath) -> Optional[str]:
        """Expand one candidate path; ``None`` when it does not exist."""
        variable, *segments = candidate
        base = self._env.get(variable.upper())
        if not base:
            return None
        path = base
        for segment in segments:
            if any(ch in segment for ch in "*?["):
                match = self._newest_match(path, segment)
                if match is None:
                    return None
                path = os.path.join(path, match)
            else:
                path = os.path.join(path, segment)
        return path if os.path.isfile(path) else None

    @staticmethod
    def _newest_match(directory: str, pattern: str) -> Optional[str]:
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ProbeError(f"cannot list {directory}: {e}") from e
        matches = [name for name in names if fnmatch.fnmatch(name.lower(), pattern.lower())]
        if not matches:
            return None
        return max(matches, key=lambda name: (_version_key(name), name))

    def _powershell(self, script: str) -> Optional[str]:
        cmd = ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]
        try:
            result = self._runner(cmd, self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"PowerShell timed out after {self.timeout}s") from e
        except OSError as e:
            raise ProbeError(f"PowerShell unavailable: {e}") from e
        if result.returncode != 0:
            logger.debug(f"PowerShell exited {result.returncode}: {result.stderr.strip()[:200]}")
            return None
        return result.stdout.strip() or None


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE VERSION SOURCES
# ═══════════════════════════════════════════════════════════════════════════════


class WingetVersionSource:
    """Latest version as reported by ``winget search``."""

    name = "winget"

    def __init__(
        self,
        tool: Optional[ToolLocation],
        package_id: str,
        timeout: Optional[float] = 60,
        runner: Runner = run_process,
    ):
        self.tool = tool
        self.package_id = package_id
        self.timeout = timeout
        self._runner = runner

    def command(self) -> List[str]:
        return [
            self.tool.executable_path,
            "search",
            "--id",
            self.package_id,
            "--exact",
            "--accept-source-agreements",
        ]

    def get_latest_version(self) -> Union[str, Unavailable]:
        if self.tool is None:
            return Unavailable("winget not found")
        try:
            result = self._runner(self.command(), self.timeout)
        except subprocess.TimeoutExpired:
            return Unavailable(f"winget search timed out after {self.timeout}s")
        except OSError as e:
            return Unavailable(f"winget could not be started: {e}", environment=True)
        if result.returncode != 0:
            return Unavailable(
                f"winget search exited with code {normalize_exit_code(result.returncode)}"
            )
        version = self._parse(result.stdout)
        if not version:
            return Unavailable("no version found in winget search output")
        return version

    def _parse(self, output: str) -> Optional[str]:
        # Progress bars ("1.50 MB / 2.00 MB") can precede the result table,
        # so the row naming the package is preferred.
        needle = self.package_id.lower()
        for line in output.splitlines():
            index = line.lower().find(needle)
            if index != -1:
                version = extract_version(line[index + len(needle):])
                if version:
                    return version
        return extract_version(output)


class VersionFeedSource:
    """Latest version from a JSON feed of ``{os, versions: [{channel, version}]}``."""

    name = "version feed"

    def __init__(
        self,
        url: str,
        target_os: str = "win",
        channel: str = "stable",
        timeout: float = 15,
        opener: Callable = urllib.request.urlopen,
    ):
        self.url = url
        self.target_os = target_os
        self.channel = channel
        self.timeout = timeout
        self._opener = opener

    def get_latest_version(self) -> Union[str, Unavailable]:
        try:
            request = urllib.request.Request(self.url, headers={"User-Agent": USER_AGENT})
        except ValueError as e:
            return Unavailable(f"invalid version feed URL: {e}")
        try:
            with self._opener(request, timeout=self.timeout) as response:
                # Only a 200 carries the feed body.
                status = getattr(response, "status", 200)
                if status != 200:
                    return Unavailable(f"version feed returned HTTP {status}")
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            return Unavailable(f"version feed returned HTTP {e.code}")
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            reason = getattr(e, "reason", e)
            return Unavailable(f"version feed unreachable: {reason}", environment=True)
        except ValueError as e:
            return Unavailable(f"malformed version feed: {e}")
        return self._select(payload)

    def _select(self, payload) -> Union[str, Unavailable]:
        if not isinstance(payload, list):
            return Unavailable("malformed version feed: expected a list")
        for record in payload:
            if not isinstance(record, dict) or record.get("os") != self.target_os:
                continue
            versions = record.get("versions", [])
            if not isinstance(versions, list):
                return Unavailable(f"malformed version feed: {self.target_os} versions is not a list")
            for entry in versions:
                if not isinstance(entry, dict) or entry.get("channel") != self.channel:
                    continue
                token = str(entry.get("version") or "").strip().split(" ")[0]
                try:
                    parse_version(token)
                except InvalidVersionFormat:
                    return Unavailable(f"unparsable feed version {token!r}")
                return token
        return Unavailable(f"no {self.target_os}/{self.channel} entry in version feed")


# ═══════════════════════════════════════════════════════════════════════════════
# UPDATE EXECUTORS
# ═══════════════════════════════════════════════════════════════════════════════


class CommandExecutor(ABC):
    """Runs an update tool and waits for it without a timeout."""

    name = "update tool"

    def __init__(self, tool: Optional[ToolLocation], runner: Runner = run_process):
        self.tool = tool
        self._runner = runner

    @property
    def available(self) -> bool:
        return self.tool is not None

    @abstractmethod
    def command(self) -> List[str]:
        """Full command line for the tool."""

    def execute(self) -> int:
        if self.tool is None:
            raise ExecutionError(f"{self.name} is not available")
        cmd = self.command()
        logger.info(f"Running: {' '.join(cmd)}")
        try:
            result = self._runner(cmd, None)
        except OSError as e:
            raise ExecutionError(f"{self.name} could not be started: {e}") from e
        if result.stdout.strip():
            logger.debug(f"{self.name} output:\n{result.stdout.strip()}")
        return normalize_exit_code(result.returncode)


class WingetUpgradeExecutor(CommandExecutor):
    name = "winget upgrade"

    def __init__(self, tool: Optional[ToolLocation], package_id: str, runner: Runner = run_process):
        super().__init__(tool, runner)
        self.package_id = package_id

    def command(self) -> List[str]:
        return [
            self.tool.executable_path,
            "upgrade",
            "--id",
            self.package_id,
            "--exact",
            "--force",
            "--silent",
            "--accept-source-agreements",
            "--accept-package-agreements",
        ]


class VendorUpdaterExecutor(CommandExecutor):
    name = "Google Update"

    def command(self) -> List[str]:
        return [self.tool.executable_path, "/ua", "/installsource", "scheduler"]


# ═══════════════════════════════════════════════════════════════════════════════
# UPDATE RESOLVER
# ═══════════════════════════════════════════════════════════════════════════════


class UpdateResolver:
    """Detect/remediate state machine for a single application.

    Each call re-derives every fact from live probes; nothing is cached
    between calls. Sub-component failures degrade the outcome and are
    recorded in the run summary, they never abort the run.
    """

    def __init__(
        self,
        inspector,
        primary_source: Callable[[Optional[ToolLocation]], object],
        secondary_source,
        primary_executor: Callable[[Optional[ToolLocation]], CommandExecutor],
        secondary_executor: Callable[[Optional[ToolLocation]], CommandExecutor],
        policy: UnknownVersionPolicy = UnknownVersionPolicy.CONSERVATIVE,
        sentinel_version: str = DEFAULT_SENTINEL_VERSION,
        app_name: str = "Google Chrome",
    ):
        self.inspector = inspector
        self.primary_source = primary_source
        self.secondary_source = secondary_source
        self.primary_executor = primary_executor
        self.secondary_executor = secondary_executor
        self.policy = policy
        self.sentinel_version = sentinel_version
        self.app_name = app_name

    def detect(self) -> RunSummary:
        facts: List[str] = []
        detection = self._detect(facts)
        return self._summarize("detect", detection.outcome, facts)

    def remediate(self) -> RunSummary:
        facts: List[str] = []
        detection = self._detect(facts)
        if detection.outcome is not UpdateOutcome.NEEDS_UPDATE:
            return self._summarize("remediate", detection.outcome, facts)
        outcome, cause = self._apply(detection, facts)
        if outcome is UpdateOutcome.UPDATE_SUCCEEDED:
            self._record_installed_after_update(facts)
        return self._summarize("remediate", outcome, facts, cause)

    # ── Detect ───────────────────────────────────────────────────────

    def _detect(self, facts: List[str]) -> Detection:
        app = self._locate(self.app_name, self.inspector.find_installed_app, facts)
        if app is None:
            facts.append(f"{self.app_name} is not installed")
            return Detection(UpdateOutcome.NOT_INSTALLED)
        facts.append(f"installed version {app.display_version} ({app.install_path or app.probe})")

        tool = self._locate("winget", self.inspector.find_update_tool, facts)
        facts.append(f"winget at {tool.executable_path}" if tool else "winget not found")

        latest = self._latest_version(tool, facts)
        if latest is None:
            return Detection(UpdateOutcome.VERSION_UNKNOWN, app, tool)

        try:
            order = compare_versions(app.display_version, latest.version)
        except InvalidVersionFormat as e:
            logger.warning(f"Cannot compare versions: {e}")
            facts.append(f"version comparison failed: {e}")
            return Detection(UpdateOutcome.VERSION_UNKNOWN, app, tool, latest)

        if order is not Comparison.LESS:
            facts.append("up to date")
            return Detection(UpdateOutcome.UP_TO_DATE, app, tool, latest)
        facts.append(f"update available {app.display_version} -> {latest.version}")
        return Detection(UpdateOutcome.NEEDS_UPDATE, app, tool, latest)

    def _latest_version(
        self, tool: Optional[ToolLocation], facts: List[str]
    ) -> Optional[RemoteVersionInfo]:
        ordered = (
            (VersionSource.PRIMARY, self.primary_source(tool)),
            (VersionSource.SECONDARY, self.secondary_source),
        )
        for kind, source in ordered:
            result = source.get_latest_version()
            if isinstance(result, Unavailable):
                if result.environment:
                    logger.warning(f"{source.name} environment error: {result.reason}")
                    facts.append(f"{source.name} unavailable (environment error: {result.reason})")
                else:
                    logger.info(f"{source.name} unavailable: {result.reason}")
                    facts.append(f"{source.name} unavailable ({result.reason})")
                continue
            facts.append(f"latest version {result} from {source.name}")
            return RemoteVersionInfo(result, kind, source.name)

        if self.policy is UnknownVersionPolicy.ASSUME_OUTDATED:
            facts.append(f"latest version unknown, assuming outdated ({self.sentinel_version})")
            return RemoteVersionInfo(self.sentinel_version, VersionSource.SENTINEL, "sentinel")
        facts.append("latest version unknown")
        return None

    def _locate(self, label: str, probe: Callable, facts: List[str]):
        try:
            return probe()
        except ProbeError as e:
            logger.warning(f"Environment error while locating {label}: {e}")
            facts.append(f"environment error locating {label}: {e}")
            return None

    # ── Remediate ────────────────────────────────────────────────────

    def _apply(
        self, detection: Detection, facts: List[str]
    ) -> Tuple[UpdateOutcome, Optional[UpdateOutcome]]:
        if self._app_running():
            facts.append(f"{self.app_name} is running, the update applies after restart")

        primary = self.primary_executor(detection.tool)
        if not primary.available:
            secondary = self._vendor_executor(facts)
            if secondary.available:
                return self._run_final(secondary, facts), None
            facts.append("no update tool available")
            return UpdateOutcome.UPDATE_FAILED, UpdateOutcome.TOOL_MISSING

        code = self._run(primary, facts)
        if code != INSTALLER_TECHNOLOGY_MISMATCH:
            return self._interpret(primary, code, facts), None

        facts.append(f"{primary.name} reported an installer technology mismatch")
        secondary = self._vendor_executor(facts)
        if not secondary.available:
            facts.append("no fallback updater available")
            return UpdateOutcome.UPDATE_FAILED, None
        return self._run_final(secondary, facts), None

    def _vendor_executor(self, facts: List[str]) -> CommandExecutor:
        updater = self._locate("Google Update", self.inspector.find_vendor_updater, facts)
        facts.append(
            f"Google Update at {updater.executable_path}" if updater else "Google Update not found"
        )
        return self.secondary_executor(updater)

    def _run(self, executor: CommandExecutor, facts: List[str]) -> Optional[int]:
        try:
            code = normalize_exit_code(executor.execute())
        except ExecutionError as e:
            logger.error(f"{executor.name} failed to start: {e}")
            facts.append(f"{executor.name} could not run ({e})")
            return None
        facts.append(f"{executor.name} exited with code {code}")
        return code

    def _run_final(self, executor: CommandExecutor, facts: List[str]) -> UpdateOutcome:
        return self._interpret(executor, self._run(executor, facts), facts)

    def _interpret(
        self, executor: CommandExecutor, code: Optional[int], facts: List[str]
    ) -> UpdateOutcome:
        if code == 0:
            facts.append(f"{executor.name} update successful")
            return UpdateOutcome.UPDATE_SUCCEEDED
        facts.append(f"{executor.name} update failed")
        return UpdateOutcome.UPDATE_FAILED

    def _app_running(self) -> bool:
        check = getattr(self.inspector, "is_app_running", None)
        return bool(check and check())

    def _record_installed_after_update(self, facts: List[str]):
        app = self._locate(self.app_name, self.inspector.find_installed_app, facts)
        if app:
            facts.append(f"installed version after update {app.display_version}")

    def _summarize(
        self,
        mode: str,
        outcome: UpdateOutcome,
        facts: List[str],
        cause: Optional[UpdateOutcome] = None,
    ) -> RunSummary:
        summary = RunSummary(mode, outcome, tuple(facts), cause)
        level = logging.INFO if summary.exit_code == EXIT_OK else logging.WARNING
        logger.log(level, f"{mode}: {summary.render()}")
        return summary


def build_resolver(config: UpdateConfig, runner: Runner = run_process) -> UpdateResolver:
    """Wire the Windows inspector, version sources and executors."""
    app = config.settings["app"]
    performance = config.settings["performance"]
    sources = config.settings["sources"]
    package_id = app["package_id"]

    return UpdateResolver(
        inspector=WindowsInspector(config, runner=runner),
        primary_source=lambda tool: WingetVersionSource(
            tool, package_id, performance["query_timeout_seconds"], runner
        ),
        secondary_source=VersionFeedSource(
            sources["feed_url"],
            sources["feed_os"],
            sources["feed_channel"],
            performance["feed_timeout_seconds"],
        ),
        primary_executor=lambda tool: WingetUpgradeExecutor(tool, package_id, runner),
        secondary_executor=lambda updater: VendorUpdaterExecutor(updater, runner),
        policy=config.policy,
        sentinel_version=config.sentinel_version,
        app_name=app["display_name"],
    )


# ═══════════════════════════════════════════════════════════════════════════════
# USER INTERFACE
# ═══════════════════════════════════════════════════════════════════════════════


class UISystem:
    """Console rendering of run summaries."""

    STYLES = {EXIT_OK: "green", EXIT_WARNING: "yellow", EXIT_NOTICE: "cyan"}
    ICONS = {EXIT_OK: "✅", EXIT_WARNING: "⚠️", EXIT_NOTICE: "ℹ️"}

    @staticmethod
    def create_summary_panel(summary: RunSummary) -> Panel:
        style = UISystem.STYLES[summary.exit_code]
        table = Table.grid(padding=(0, 1))
        table.add_column(style="dim", justify="right")
        table.add_column(style="white")
        for index, fact in enumerate(summary.facts, start=1):
            table.add_row(f"{index}.", Text(fact))
        if not summary.facts:
            table.add_row("", "No facts recorded")

        icon = UISystem.ICONS[summary.exit_code]
        return Panel(
            table,
            title=f"[bold {style}]{icon} {summary.mode.title()}: {summary.outcome.value}[/bold {style}]",
            subtitle=f"[dim]exit code {summary.exit_code}[/dim]",
            border_style=style,
            box=box.ROUNDED,
        )

    @staticmethod
    def display(summary: RunSummary, output_format: str = "rich"):
        if output_format == "json":
            console.print_json(data=summary.to_dict())
        elif output_format == "plain":
            console.print(summary.render(), markup=False, emoji=False, highlight=False, soft_wrap=True)
        else:
            console.print(UISystem.create_summary_panel(summary))
            console.print(summary.render(), markup=False, emoji=False, highlight=False, soft_wrap=True)


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN APPLICATION
# ═══════════════════════════════════════════════════════════════════════════════


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chrome-update",
        description=f"Chrome Update v{__version__} - detect and remediate outdated Google Chrome",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0  up to date, or update succeeded
  1  update needed, or update failed
  2  not installed, latest version unknown, or no update tool

Examples:
  chrome-update detect                       # Report status only
  chrome-update remediate                    # Update when outdated
  chrome-update detect --json                # Machine-readable result
  chrome-update remediate --on-unknown assume-outdated
        """,
    )
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["detect", "remediate"],
        default="detect",
        help="Run the read-only check (default) or the check plus update",
    )
    parser.add_argument("--config", help="Path to a JSON configuration file")
    parser.add_argument(
        "--on-unknown",
        choices=["conservative", "assume-outdated"],
        help="Policy when no source reports the latest version",
    )
    parser.add_argument("--feed-url", help="Override the JSON version feed URL")
    output = parser.add_mutually_exclusive_group()
    output.add_argument("--json", action="store_true", help="Print the result as JSON")
    output.add_argument("--plain", action="store_true", help="Print only the summary line")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr")
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)

    config = UpdateConfig(config_file=Path(args.config) if args.config else None, autoload=False)
    setup_logging(config, args.verbose)
    config.load()
    if args.on_unknown:
        config.settings["policy"]["on_unknown_version"] = args.on_unknown.replace("-", "_")
    if args.feed_url:
        config.settings["sources"]["feed_url"] = args.feed_url
    logger.info(f"chrome-update {__version__} {args.mode} on {platform.system()} {platform.release()}")

    try:
        resolver = build_resolver(config)
        summary = resolver.detect() if args.mode == "detect" else resolver.remediate()
    except Exception as e:
        logger.exception(f"Unexpected failure during {args.mode}")
        console.print(f"[red]❌ {args.mode} failed unexpectedly: {e}[/red]")
        return EXIT_WARNING

    output_format = "json" if args.json else "plain" if args.plain else "rich"
    UISystem.display(summary, output_format)
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
