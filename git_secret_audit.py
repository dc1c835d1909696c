#!/usr/bin/env python3
"""
===================================================================
GIT SECURITY AUDIT: SECRET & SENSITIVE FILE DETECTION
===================================================================

PURPOSE:
    Scans a git repository across three surfaces (working tree, staged
    index and recent commit history) for leaked credentials, private
    keys, sensitive filenames and oversized or binary artifacts, and
    reports each issue as a structured Finding.

FEATURES:
    ✓ Declarative rule table (21 built-in detectors: AWS, GCP, Azure,
      GitHub, Slack, Stripe, Twilio, SendGrid, Auth0, JWT, private keys,
      certificates, database URLs, passwords)
    ✓ Custom rules merged into the same table by name
    ✓ Per-rule enable/disable toggles (check_<rule_name>)
    ✓ Working tree, staged and commit history scanning via git plumbing
    ✓ Size and binary gating before pattern matching
    ✓ Sensitive filename and large file sweeps
    ✓ Hard per-call timeout on every git subprocess
    ✓ Phase isolation: one failed phase never aborts the audit
    ✓ Line numbers and truncated match previews on every secret finding
    ✓ Structured JSON logging for observability

SECURITY NOTICE:
    Matched text is truncated to 50 characters before it is stored so a
    full secret never ends up in the report.

USAGE:
    from git_secret_audit import GitSecurityAudit

    audit = GitSecurityAudit({"repository_path": "/srv/app", "max_commits": 50})
    if audit.should_run():
        clean = audit.run()
        for finding in audit.get_findings():
            print(finding.summary())

    # Inside an event loop
    clean = await audit.run_async()

CONFIGURATION:
    Passed as a mapping to GitSecurityAudit. Loose values (strings for
    booleans, integers and lists, JSON strings for custom_patterns) are
    accepted and normalised once.

    Environment variables supply defaults:
    - GIT_AUDIT_TIMEOUT: seconds per git call (default: 300)
    - GIT_AUDIT_MAX_COMMITS: commits to scan in history (default: 100)
    - GIT_AUDIT_MAX_FILE_SIZE: bytes before a file counts as large (default: 1048576)
    - GIT_AUDIT_SHOW_PROGRESS: true|false (default: true)
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import asyncio
import fnmatch
import json
import logging
import os
import re
import sys
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import aiofiles
from tqdm import tqdm

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

AUDIT_NAME = "Git Security Audit"

# Environment-driven defaults
DEFAULT_TIMEOUT_SECONDS = int(os.environ.get("GIT_AUDIT_TIMEOUT", "300"))
DEFAULT_MAX_COMMITS = int(os.environ.get("GIT_AUDIT_MAX_COMMITS", "100"))
DEFAULT_MAX_FILE_SIZE = int(os.environ.get("GIT_AUDIT_MAX_FILE_SIZE", "1048576"))  # 1 MiB
DEFAULT_SHOW_PROGRESS = os.environ.get("GIT_AUDIT_SHOW_PROGRESS", "true").lower() == "true"
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json

# Operational constants
BINARY_SAMPLE_SIZE = 1024         # Bytes read for binary detection
MATCH_PREVIEW_LENGTH = 50         # Max stored length of a matched secret
MATCH_PREVIEW_SUFFIX = "..."
CUSTOM_PATTERN_DESCRIPTION = "Custom secret pattern"

DEFAULT_EXCLUDE_PATHS = (
    "vendor/", "node_modules/", ".git/", "storage/", "bootstrap/cache/",
    "tests/", "*.log", "*.tmp",
)

DEFAULT_INCLUDE_EXTENSIONS = (
    "php", "js", "ts", "jsx", "tsx", "vue", "py", "rb", "java", "go", "rs", "c", "cpp", "h",
    "yml", "yaml", "json", "xml", "ini", "conf", "config", "env", "sh", "bash", "zsh",
    "sql", "md", "txt", "html", "css", "scss", "less", "dockerfile",
)

# Phase toggles that share the check_ prefix with per-rule toggles
PHASE_TOGGLES = {"check_sensitive_files", "check_large_files", "check_binary_files"}

# Ordered: the first matching entry names the file
SENSITIVE_FILES = (
    (".env.local", "Local environment file"),
    (".env.production", "Production environment file"),
    (".env", "Environment file"),
    (".env.*", "Environment file"),
    ("id_rsa", "SSH private key"),
    ("id_dsa", "SSH private key"),
    ("id_ecdsa", "SSH private key"),
    ("id_ed25519", "SSH private key"),
    (".pem", "PEM certificate/key file"),
    (".key", "Private key file"),
    (".crt", "Certificate file"),
    (".p12", "PKCS12 certificate file"),
    (".pfx", "PKCS12 certificate file"),
    ("dump.sql", "Database dump"),
    ("backup.sql", "Database backup"),
    (".htpasswd", "Apache password file"),
    ("web.config", "IIS configuration file"),
)

# Finding categories
CATEGORY_SECRET = "git-secret"
CATEGORY_FILE_SIZE = "git-file-size"
CATEGORY_BINARY_FILE = "git-binary-file"
CATEGORY_SENSITIVE_FILE = "git-sensitive-file"
CATEGORY_LARGE_FILE = "git-large-file"
CATEGORY_AUDIT = "git-audit"

REPOSITORY_CONTEXT = "repository"


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'phase'):
            log_data["phase"] = record.phase
        if hasattr(record, 'commit'):
            log_data["commit"] = record.commit
        if hasattr(record, 'finding_count'):
            log_data["finding_count"] = record.finding_count

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class GitAuditError(Exception):
    """Base class for audit errors."""


class ConfigurationError(GitAuditError):
    """Raised when the audit configuration cannot be normalised."""


class AuditSetupError(GitAuditError):
    """Raised when the repository cannot be prepared for scanning."""


class GitCommandError(GitAuditError):
    """A git plumbing call exited non-zero, timed out or could not start."""

    def __init__(self, args: Sequence[str], result: "CommandResult"):
        self.command = list(args)
        self.returncode = result.returncode
        self.stderr = result.stderr
        self.timed_out = result.timed_out

        if result.timed_out:
            reason = "timed out"
        elif result.error:
            reason = result.error
        else:
            reason = f"exit code {result.returncode}: {result.stderr.strip()[:200]}"
        super().__init__(f"git {' '.join(self.command)} failed ({reason})")


# ===================================================================
# SEVERITY & FINDINGS
# ===================================================================

class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def priority(self) -> int:
        """Weight for sorting, higher is more severe."""
        return _SEVERITY_PRIORITY[self]

    @classmethod
    def from_string(cls, value: Any) -> "Severity":
        """Case-insensitive lookup; unknown levels are a configuration error."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown severity: {value!r}") from None

    @classmethod
    def sorted_by_priority(cls) -> List["Severity"]:
        return sorted(cls, key=lambda s: s.priority, reverse=True)


_SEVERITY_PRIORITY = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


@dataclass(frozen=True)
class Finding:
    """One reported issue. Immutable once recorded."""
    category: str
    title: str
    description: str
    severity: Severity
    file: Optional[str] = None
    line: Optional[int] = None
    context: str = ""
    pattern: Optional[str] = None
    match: Optional[str] = None
    size: Optional[int] = None
    error: Optional[str] = None
    source: str = AUDIT_NAME

    @property
    def is_critical(self) -> bool:
        return self.severity is Severity.CRITICAL

    @property
    def is_high(self) -> bool:
        return self.severity is Severity.HIGH

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable view; optional fields that are unset are omitted."""
        data = {
            "source": self.source,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "context": self.context,
        }
        for key in ("file", "line", "pattern", "match", "size", "error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def summary(self) -> str:
        return f"[{self.severity.value.upper()}] {self.category}: {self.title} ({self.source})"


# ===================================================================
# CONFIGURATION
# ===================================================================

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigurationError(f"Option {key!r} must be a boolean, got {value!r}")


def _to_int(key: str, value: Any, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Option {key!r} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Option {key!r} must be an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigurationError(f"Option {key!r} must be >= {minimum}, got {number}")
    return number


def _to_list(key: str, value: Any) -> Tuple[str, ...]:
    """Accept a list or a comma-separated string."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        raise ConfigurationError(f"Option {key!r} must be a list or comma-separated string")
    return tuple(str(item).strip() for item in items if str(item).strip())


def _to_pattern_mapping(value: Any) -> Dict[str, Any]:
    """Custom patterns arrive as a mapping or as a JSON object string."""
    if value is None:
        return {}
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in custom_patterns: {e}") from None
    if not isinstance(value, Mapping):
        raise ConfigurationError("custom_patterns must be a mapping of name to rule")
    return dict(value)


@dataclass(frozen=True)
class ScanConfig:
    """Normalised audit configuration. Built once, never re-interpreted."""
    repository_path: Path
    scan_working_tree: bool = True
    scan_staged: bool = True
    scan_history: bool = True
    check_sensitive_files: bool = True
    check_large_files: bool = True
    check_binary_files: bool = True
    max_commits: int = DEFAULT_MAX_COMMITS
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    exclude_paths: Tuple[str, ...] = DEFAULT_EXCLUDE_PATHS
    include_extensions: Tuple[str, ...] = DEFAULT_INCLUDE_EXTENSIONS
    custom_patterns: Mapping[str, Any] = field(default_factory=dict)
    pattern_toggles: Mapping[str, bool] = field(default_factory=dict)
    show_progress: bool = DEFAULT_SHOW_PROGRESS

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]] = None) -> "ScanConfig":
        """
        Normalise a loosely typed configuration mapping.

        Args:
            options: Raw configuration values; absent keys take defaults

        Returns:
            ScanConfig

        Raises:
            ConfigurationError: if any value cannot be interpreted
        """
        if options is not None and not isinstance(options, Mapping):
            raise ConfigurationError("Audit configuration must be a mapping")
        options = dict(options or {})

        bad_keys = [key for key in options if not isinstance(key, str)]
        if bad_keys:
            raise ConfigurationError(f"Configuration keys must be strings, got {bad_keys!r}")

        def flag(key: str, default: bool) -> bool:
            return _to_bool(key, options[key]) if key in options else default

        def number(key: str, default: int, minimum: int) -> int:
            return _to_int(key, options[key], minimum) if key in options else default

        repository_path = options.get("repository_path") or os.getcwd()
        if not isinstance(repository_path, (str, os.PathLike)):
            raise ConfigurationError(f"Option 'repository_path' must be a path, got {repository_path!r}")

        toggles = {
            key[len("check_"):]: _to_bool(key, value)
            for key, value in options.items()
            if key.startswith("check_") and key not in PHASE_TOGGLES
        }

        return cls(
            repository_path=Path(repository_path),
            scan_working_tree=flag("scan_working_tree", True),
            scan_staged=flag("scan_staged", True),
            scan_history=flag("scan_history", True),
            check_sensitive_files=flag("check_sensitive_files", True),
            check_large_files=flag("check_large_files", True),
            check_binary_files=flag("check_binary_files", True),
            max_commits=number("max_commits", DEFAULT_MAX_COMMITS, 0),
            max_file_size=number("max_file_size", DEFAULT_MAX_FILE_SIZE, 0),
            timeout=number("timeout", DEFAULT_TIMEOUT_SECONDS, 1),
            exclude_paths=(_to_list("exclude_paths", options["exclude_paths"])
                           if "exclude_paths" in options else DEFAULT_EXCLUDE_PATHS),
            include_extensions=(_to_list("include_extensions", options["include_extensions"])
                                if "include_extensions" in options else DEFAULT_INCLUDE_EXTENSIONS),
            custom_patterns=_to_pattern_mapping(options.get("custom_patterns")),
            pattern_toggles=toggles,
            show_progress=flag("show_progress", DEFAULT_SHOW_PROGRESS),
        )


# ===================================================================
# DETECTION PATTERNS
# ===================================================================

# name -> (regex, description, severity); compiled case-insensitively
BUILTIN_PATTERNS: Dict[str, Tuple[str, str, Severity]] = {
    # AWS
    "aws_access_key_id": (
        r'AKIA[0-9A-Z]{16}',
        "AWS Access Key ID", Severity.CRITICAL),
    "aws_secret_access_key": (
        r'aws[_-]?secret[_-]?access[_-]?key\s*[:=]\s*["\']?([A-Za-z0-9/+=]{40})["\']?',
        "AWS Secret Access Key", Severity.CRITICAL),

    # Google Cloud
    "gcp_service_account_key": (
        r'"private_key":\s*"-----BEGIN\s+PRIVATE\s+KEY-----',
        "Google Cloud Service Account Private Key", Severity.CRITICAL),

    # Azure
    "azure_client_secret": (
        r'client[_-]?secret\s*[:=]\s*["\']?([A-Za-z0-9\-_~]{36,})["\']?',
        "Azure Client Secret", Severity.CRITICAL),

    # GitHub
    "github_token": (
        r'ghp_[A-Za-z0-9]{36}',
        "GitHub Personal Access Token", Severity.CRITICAL),
    "github_oauth": (
        r'github_oauth[_-]?token\s*[:=]\s*["\']?([A-Za-z0-9]{40})["\']?',
        "GitHub OAuth Token", Severity.CRITICAL),

    # Databases
    "database_url": (
        r'(?:mysql|postgresql|mongodb|redis)://[^:]+:[^@]+@[^/]+',
        "Database URL with credentials", Severity.HIGH),

    # API keys & tokens
    "api_key_generic": (
        r'api[_-]?key\s*[:=]\s*["\']?([A-Za-z0-9\-_]{16,})["\']?',
        "Generic API Key", Severity.HIGH),
    "jwt_token": (
        r'eyJ[A-Za-z0-9\-_=]+\.[A-Za-z0-9\-_=]+\.?[A-Za-z0-9\-_.+/=]*',
        "JWT Token", Severity.MEDIUM),

    # Private keys & certificates
    "private_key_rsa": (
        r'-----BEGIN\s+RSA\s+PRIVATE\s+KEY-----',
        "RSA Private Key", Severity.CRITICAL),
    "private_key_generic": (
        r'-----BEGIN\s+(?:DSA|EC|OPENSSH)?\s*PRIVATE\s+KEY-----',
        "Private Key", Severity.CRITICAL),
    "certificate": (
        r'-----BEGIN\s+CERTIFICATE-----',
        "SSL Certificate", Severity.MEDIUM),

    # Passwords
    "password_in_url": (
        r'[a-zA-Z][a-zA-Z0-9+.-]*://[^:/\s]+:[^@/\s]+@[^/\s]+',
        "Password in URL", Severity.HIGH),
    "password_field": (
        r'password\s*[:=]\s*["\']?([^"\'\s]{8,})["\']?',
        "Password Field", Severity.MEDIUM),

    # SSH
    "ssh_private_key": (
        r'-----BEGIN\s+OPENSSH\s+PRIVATE\s+KEY-----',
        "SSH Private Key", Severity.CRITICAL),
    "ssh_public_key": (
        r'ssh-(?:rsa|dss|ed25519)\s+[A-Za-z0-9/+]+',
        "SSH Public Key", Severity.MEDIUM),

    # Messaging, payments & email
    "slack_token": (
        r'xox[baprs]-[0-9]{12}-[0-9]{12}-[0-9]{12}-[a-z0-9]{32}',
        "Slack Token", Severity.HIGH),
    "stripe_key": (
        r'sk_(?:live|test)_[0-9a-zA-Z]{24}',
        "Stripe API Key", Severity.CRITICAL),
    "twilio_key": (
        r'AC[a-z0-9]{32}',
        "Twilio Account SID", Severity.HIGH),
    "sendgrid_key": (
        r'SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}',
        "SendGrid API Key", Severity.HIGH),

    # Auth & identity
    "auth0_secret": (
        r'[a-zA-Z0-9_-]{43}',
        "Auth0 Client Secret", Severity.HIGH),
}


@dataclass(frozen=True)
class PatternRule:
    """A named detection rule."""
    name: str
    regex: "re.Pattern[str]"
    description: str
    severity: Severity
    enabled: bool = True


def _compile_custom_rule(key: str, definition: Any, enabled: bool) -> PatternRule:
    if not isinstance(definition, Mapping):
        raise ConfigurationError(f"Custom pattern {key!r} must be a mapping")

    regex = definition.get("pattern")
    if not regex:
        raise ConfigurationError(f"Custom pattern {key!r} has no pattern")
    if "severity" not in definition:
        raise ConfigurationError(f"Custom pattern {key!r} has no severity")

    flags = re.IGNORECASE if _to_bool(f"{key}.ignore_case", definition.get("ignore_case", True)) else 0
    try:
        compiled = re.compile(str(regex), flags)
    except re.error as e:
        raise ConfigurationError(f"Invalid regex for custom pattern {key!r}: {e}") from None

    return PatternRule(
        name=str(definition.get("name") or key),
        regex=compiled,
        description=str(definition.get("description") or CUSTOM_PATTERN_DESCRIPTION),
        severity=Severity.from_string(definition["severity"]),
        enabled=enabled,
    )


class PatternLibrary:
    """
    Immutable table of detection rules.

    Built once from the built-in rules plus custom rules; a custom rule
    replaces the built-in of the same key. Rule order is table order, with
    new custom rules appended.
    """

    def __init__(self, rules: Sequence[Tuple[str, PatternRule]]):
        self._rules: Tuple[PatternRule, ...] = tuple(rule for _, rule in rules)
        self._index: Dict[str, PatternRule] = dict(rules)

    @classmethod
    def build(
        cls,
        custom_patterns: Optional[Mapping[str, Any]] = None,
        toggles: Optional[Mapping[str, bool]] = None
    ) -> "PatternLibrary":
        """
        Compile the rule table.

        Args:
            custom_patterns: key -> {pattern, severity, description?, name?, ignore_case?}
            toggles: key -> enabled flag (absent keys are enabled)

        Returns:
            PatternLibrary

        Raises:
            ConfigurationError: on a malformed custom rule
        """
        toggles = toggles or {}
        table: Dict[str, PatternRule] = {}

        for key, (regex, description, severity) in BUILTIN_PATTERNS.items():
            table[key] = PatternRule(
                name=key,
                regex=re.compile(regex, re.IGNORECASE),
                description=description,
                severity=severity,
                enabled=toggles.get(key, True),
            )

        for key, definition in (custom_patterns or {}).items():
            if key in table:
                logger.info(f"Custom pattern overrides built-in rule: {key}")
            else:
                logger.info(f"Loaded custom pattern: {key}")
            table[key] = _compile_custom_rule(key, definition, toggles.get(key, True))

        return cls(list(table.items()))

    @property
    def rules(self) -> Tuple[PatternRule, ...]:
        return self._rules

    @property
    def enabled_rules(self) -> Tuple[PatternRule, ...]:
        return tuple(rule for rule in self._rules if rule.enabled)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._index)

    def get(self, name: str) -> Optional[PatternRule]:
        return self._index.get(name)

    def __iter__(self) -> Iterator[PatternRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: object) -> bool:
        return name in self._index


# ===================================================================
# GIT PLUMBING
# ===================================================================

@dataclass(frozen=True)
class CommandResult:
    """Outcome of one subprocess call. Never raised, always returned."""
    stdout: bytes = b""
    returncode: Optional[int] = None
    stderr: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.error is None


CommandExecutor = Callable[[Sequence[str], Path, float], Awaitable[CommandResult]]


async def run_subprocess(args: Sequence[str], cwd: Path, timeout: float) -> CommandResult:
    """
    Run a command with a hard deadline.

    Args:
        args: Full command line, program first
        cwd: Working directory
        timeout: Seconds before the process is killed

    Returns:
        CommandResult; spawn errors and timeouts are reported, not raised
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except (OSError, ValueError) as e:
        return CommandResult(error=f"cannot start {args[0]}: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(returncode=proc.returncode, timed_out=True)

    return CommandResult(
        stdout=stdout,
        returncode=proc.returncode,
        stderr=stderr.decode('utf-8', errors='ignore')
    )


def split_nul(output: bytes) -> List[str]:
    """Split NUL-delimited git output, dropping empty entries."""
    return [item for item in output.decode('utf-8', errors='surrogateescape').split("\0") if item]


def split_lines(output: bytes) -> List[str]:
    return [line.strip() for line in output.decode('utf-8', errors='ignore').splitlines() if line.strip()]


class GitClient:
    """Thin wrapper over the git plumbing calls the audit needs."""

    def __init__(
        self,
        repository_path: Path,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        executor: Optional[CommandExecutor] = None
    ):
        self.repository_path = Path(repository_path)
        self.timeout = timeout
        self.executor = executor or run_subprocess

    async def execute(self, *args: str) -> CommandResult:
        """Run one git subcommand in the repository."""
        return await self.executor(["git", *args], self.repository_path, self.timeout)

    async def _checked(self, *args: str) -> bytes:
        result = await self.execute(*args)
        if not result.ok:
            raise GitCommandError(args, result)
        return result.stdout

    async def is_work_tree(self) -> bool:
        output = await self._checked("rev-parse", "--is-inside-work-tree")
        return output.strip() == b"true"

    async def list_working_tree_files(self) -> List[str]:
        return split_nul(await self._checked("ls-files", "-z"))

    async def list_staged_files(self) -> List[str]:
        return split_nul(await self._checked("diff", "--cached", "--name-only", "-z"))

    async def list_recent_commits(self, max_commits: int) -> List[str]:
        """Newest first."""
        if max_commits <= 0:
            return []
        return split_lines(await self._checked("log", "--pretty=format:%H", f"-n{max_commits}"))

    async def list_commit_changed_files(self, commit_hash: str) -> List[str]:
        return split_nul(await self._checked(
            "diff-tree", "--root", "--no-commit-id", "--name-only", "-r", "-z", commit_hash
        ))

    async def read_blob_at_commit(self, commit_hash: str, path: str) -> bytes:
        return await self._checked("show", f"{commit_hash}:{path}")


# ===================================================================
# SCAN SURFACES
# ===================================================================

class ScanKind(Enum):
    WORKING_TREE = "working tree"
    STAGED = "staged"
    COMMIT = "commit"


@dataclass(frozen=True)
class ScanTarget:
    kind: ScanKind
    commit_hash: Optional[str] = None

    @property
    def label(self) -> str:
        """Human-readable context recorded on findings."""
        if self.kind is ScanKind.COMMIT:
            return f"commit {self.commit_hash}"
        return self.kind.value


WORKING_TREE = ScanTarget(ScanKind.WORKING_TREE)
STAGED = ScanTarget(ScanKind.STAGED)


def file_extension(path: str) -> str:
    """Text after the last dot of the basename ('' when there is none)."""
    basename = path.rsplit("/", 1)[-1]
    if "." not in basename:
        return ""
    return basename.rsplit(".", 1)[-1]


class PathFilter:
    """Exclusion rules applied to every candidate path before scanning."""

    def __init__(self, exclude_paths: Sequence[str] = (), include_extensions: Sequence[str] = ()):
        self.exclude_paths = tuple(exclude_paths)
        self.include_extensions = frozenset(ext.lstrip(".").lower() for ext in include_extensions)

    def is_excluded(self, path: str) -> bool:
        """
        Determine if a repository-relative path should be skipped.

        A path is excluded when an exclude entry matches it as a glob or is
        a literal prefix of it, or when an extension allow-list is set and
        the path's extension is not on it.
        """
        for pattern in self.exclude_paths:
            if fnmatch.fnmatchcase(path, pattern) or path.startswith(pattern):
                return True

        if self.include_extensions:
            return file_extension(path).lower() not in self.include_extensions

        return False

    def filter(self, paths: Sequence[str]) -> List[str]:
        return [path for path in paths if path and not self.is_excluded(path)]


# ===================================================================
# CONTENT CLASSIFICATION
# ===================================================================

class ContentClass(Enum):
    LARGE = "large"
    BINARY = "binary"
    TEXT = "text"


def format_bytes(size: int) -> str:
    """Human-readable size, e.g. 1536 -> '1.5 KB'."""
    units = ["B", "KB", "MB", "GB"]
    value = float(max(size, 0))
    power = 0
    while value >= 1024 and power < len(units) - 1:
        value /= 1024
        power += 1
    return f"{round(value, 2):g} {units[power]}"


async def is_binary_file(file_path: Path, sample_size: int = BINARY_SAMPLE_SIZE) -> bool:
    """
    Detect if a file is binary by checking for a NUL byte in the first chunk.

    Args:
        file_path: Path to the file to check
        sample_size: Number of bytes to sample

    Returns:
        True if the sample contains a NUL byte

    Raises:
        OSError: if the file cannot be read
    """
    async with aiofiles.open(file_path, 'rb') as f:
        chunk = await f.read(sample_size)
    return b'\x00' in chunk


async def classify_file(file_path: Path, max_file_size: int) -> Tuple[ContentClass, int]:
    """Size gate first, then binary sniffing. Raises OSError if unreadable."""
    size = file_path.stat().st_size
    if size > max_file_size:
        return ContentClass.LARGE, size
    if await is_binary_file(file_path):
        return ContentClass.BINARY, size
    return ContentClass.TEXT, size


async def read_text(file_path: Path) -> str:
    """Full content; undecodable bytes dropped, newlines left untranslated."""
    async with aiofiles.open(file_path, 'r', encoding='utf-8', errors='ignore', newline='') as f:
        return await f.read()


def decode_blob(blob: bytes) -> str:
    return blob.decode('utf-8', errors='ignore')


# ===================================================================
# PATTERN MATCHING
# ===================================================================

def line_number_at(content: str, offset: int) -> int:
    """1-based line of the character at offset."""
    return content.count("\n", 0, offset) + 1


def truncate_match(text: str, limit: int = MATCH_PREVIEW_LENGTH) -> str:
    if len(text) > limit:
        return text[:limit - len(MATCH_PREVIEW_SUFFIX)] + MATCH_PREVIEW_SUFFIX
    return text


def scan_content(
    content: str,
    file: str,
    target: ScanTarget,
    rules: Sequence[PatternRule]
) -> List[Finding]:
    """
    Apply every enabled rule to content.

    Args:
        content: Text to scan (live file or historical blob)
        file: Repository-relative path for reporting
        target: Surface the content came from
        rules: Rule table; disabled rules are skipped

    Returns:
        One finding per match, in rule order then match order
    """
    findings = []

    for rule in rules:
        if not rule.enabled:
            continue

        for match in rule.regex.finditer(content):
            line = line_number_at(content, match.start())
            findings.append(Finding(
                category=CATEGORY_SECRET,
                title=rule.description,
                description=f"Potential {rule.description} found in file '{file}' at line {line}.",
                severity=rule.severity,
                file=file,
                line=line,
                context=target.label,
                pattern=rule.name,
                match=truncate_match(match.group(0)),
            ))

    return findings


# ===================================================================
# AUDIT ORCHESTRATION
# ===================================================================

class GitSecurityAudit:
    """
    Secret and sensitive-file audit over one git repository.

    Phases run in a fixed order: working tree, staged, history, sensitive
    filenames, large files. A git or filesystem failure abandons only the
    phase it happens in. run() returns True only when nothing was found.
    """

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        executor: Optional[CommandExecutor] = None
    ):
        self._findings: List[Finding] = []
        self._setup_error: Optional[ConfigurationError] = None
        self.config: Optional[ScanConfig] = None
        self.patterns: Optional[PatternLibrary] = None
        self.path_filter = PathFilter()

        try:
            self.config = ScanConfig.from_mapping(config)
            self.patterns = PatternLibrary.build(self.config.custom_patterns, self.config.pattern_toggles)
            self.path_filter = PathFilter(self.config.exclude_paths, self.config.include_extensions)
        except ConfigurationError as e:
            logger.error(f"Invalid Git audit configuration: {e}")
            self._setup_error = e

        if self.config is not None:
            self.repository_path = self.config.repository_path
        else:
            raw_path = config.get("repository_path") if isinstance(config, Mapping) else None
            self.repository_path = Path(raw_path if isinstance(raw_path, (str, os.PathLike)) and raw_path
                                        else os.getcwd())

        timeout = self.config.timeout if self.config else DEFAULT_TIMEOUT_SECONDS
        self.git = GitClient(self.repository_path, timeout, executor)

    def get_name(self) -> str:
        return AUDIT_NAME

    def get_findings(self) -> List[Finding]:
        return list(self._findings)

    def summary(self) -> Dict[str, int]:
        """Finding counts per severity, most severe first."""
        counts = Counter(f.severity for f in self._findings)
        return {severity.value: counts.get(severity, 0) for severity in Severity.sorted_by_priority()}

    def should_run(self) -> bool:
        if not (self.repository_path / ".git").exists():
            logger.info(f"Not a Git repository, skipping Git audit: {self.repository_path}")
            return False
        return True

    def run(self) -> bool:
        """Blocking entry point. Use run_async() from inside an event loop."""
        return asyncio.run(self.run_async())

    async def run_async(self) -> bool:
        self._findings = []

        try:
            if self._setup_error is not None:
                raise self._setup_error

            if not self.should_run():
                return True

            await self._verify_repository()

            logger.info(f"Starting Git security audit: {self.repository_path}")
            config = self.config

            if config.scan_working_tree:
                await self._run_phase("working tree", self._scan_working_tree)
            if config.scan_staged:
                await self._run_phase("staged", self._scan_staged_files)
            if config.scan_history:
                await self._run_phase("history", self._scan_history)
            if config.check_sensitive_files:
                await self._run_phase("sensitive files", self._check_sensitive_files)
            if config.check_large_files:
                await self._run_phase("large files", self._check_large_files)

            logger.info(
                f"Git security audit completed with {len(self._findings)} findings",
                extra={"finding_count": len(self._findings)}
            )
            return not self._findings

        except Exception as e:
            logger.error(f"Git audit failed: {e}", exc_info=not isinstance(e, GitAuditError))
            self._add_finding(Finding(
                category=CATEGORY_AUDIT,
                title="Git Audit Failed",
                description=f"The Git security audit encountered an error: {e}",
                severity=Severity.HIGH,
                error=str(e),
            ))
            return False

    # ---------------------------------------------------------------
    # Phase plumbing
    # ---------------------------------------------------------------

    def _add_finding(self, finding: Finding) -> None:
        self._findings.append(finding)

    async def _verify_repository(self) -> None:
        try:
            inside = await self.git.is_work_tree()
        except GitCommandError as e:
            raise AuditSetupError(f"Cannot read repository at {self.repository_path}: {e}") from e
        if not inside:
            raise AuditSetupError(f"{self.repository_path} is not a git work tree")

    async def _run_phase(self, name: str, phase: Callable[[], Awaitable[None]]) -> None:
        """Run one phase; git and filesystem errors end only this phase."""
        logger.info(f"Scanning {name}", extra={"phase": name})
        before = len(self._findings)
        try:
            await phase()
        except (GitCommandError, OSError) as e:
            logger.warning(f"{name.capitalize()} scan failed: {e}", extra={"phase": name})
            return
        found = len(self._findings) - before
        logger.info(f"✓ {name.capitalize()} scan complete: {found} findings",
                    extra={"phase": name, "finding_count": found})

    def _progress(self, items: Sequence[Any], desc: str, unit: str = "file"):
        return tqdm(items, desc=desc, unit=unit, leave=False, disable=not self.config.show_progress)

    # ---------------------------------------------------------------
    # Phases
    # ---------------------------------------------------------------

    async def _scan_working_tree(self) -> None:
        files = await self.git.list_working_tree_files()
        await self._scan_files(files, WORKING_TREE)

    async def _scan_staged_files(self) -> None:
        files = await self.git.list_staged_files()
        await self._scan_files(files, STAGED)

    async def _scan_history(self) -> None:
        commits = await self.git.list_recent_commits(self.config.max_commits)
        logger.info(f"Scanning {len(commits)} commits", extra={"phase": "history"})

        for commit in self._progress(commits, "Scanning history", unit="commit"):
            try:
                files = await self.git.list_commit_changed_files(commit)
            except GitCommandError as e:
                logger.warning(f"Failed to scan commit {commit}: {e}", extra={"commit": commit})
                continue
            await self._scan_commit_files(self.path_filter.filter(files), ScanTarget(ScanKind.COMMIT, commit))

    async def _scan_commit_files(self, files: Sequence[str], target: ScanTarget) -> None:
        for file in files:
            try:
                blob = await self.git.read_blob_at_commit(target.commit_hash, file)
            except GitCommandError as e:
                # Deleted in this commit, or otherwise unreadable at this revision
                logger.debug(f"Skipping {file} in {target.label}: {e}")
                continue
            self._record(scan_content(decode_blob(blob), file, target, self.patterns.rules))

    async def _scan_files(self, files: Sequence[str], target: ScanTarget) -> None:
        candidates = self.path_filter.filter(files)
        logger.info(f"Scanning {len(candidates)} files ({target.label})")

        for file in self._progress(candidates, f"Scanning {target.label}"):
            file_path = self.repository_path / file
            if not file_path.is_file():
                continue
            try:
                await self._scan_file(file_path, file, target)
            except OSError as e:
                logger.debug(f"Skipping unreadable file {file}: {e}")

    async def _scan_file(self, file_path: Path, file: str, target: ScanTarget) -> None:
        content_class, size = await classify_file(file_path, self.config.max_file_size)

        if content_class is ContentClass.LARGE:
            self._add_finding(Finding(
                category=CATEGORY_FILE_SIZE,
                title="Large File Detected",
                description=f"File '{file}' is large ({format_bytes(size)}) and may contain sensitive data.",
                severity=Severity.LOW,
                file=file,
                context=target.label,
                size=size,
            ))
            return

        if content_class is ContentClass.BINARY:
            if self.config.check_binary_files:
                self._add_finding(Finding(
                    category=CATEGORY_BINARY_FILE,
                    title="Binary File Detected",
                    description=(f"Binary file '{file}' found in repository. "
                                 "Binary files should not be committed unless necessary."),
                    severity=Severity.LOW,
                    file=file,
                    context=target.label,
                ))
            return

        content = await read_text(file_path)
        self._record(scan_content(content, file, target, self.patterns.rules))

    def _record(self, findings: Sequence[Finding]) -> None:
        for finding in findings:
            self._add_finding(finding)

    async def _check_sensitive_files(self) -> None:
        files = await self.git.list_working_tree_files()

        for file in files:
            description = sensitive_file_description(file)
            if description is None:
                continue
            self._add_finding(Finding(
                category=CATEGORY_SENSITIVE_FILE,
                title="Sensitive File Detected",
                description=f"Sensitive file '{description}' found: '{file}'",
                severity=Severity.HIGH,
                file=file,
                context=REPOSITORY_CONTEXT,
            ))

    async def _check_large_files(self) -> None:
        files = await self.git.list_working_tree_files()
        threshold = self.config.max_file_size

        for file in files:
            file_path = self.repository_path / file
            if not file_path.is_file():
                continue
            size = file_path.stat().st_size
            if size > threshold:
                self._add_finding(Finding(
                    category=CATEGORY_LARGE_FILE,
                    title="Large File in Repository",
                    description=f"Large file '{file}' ({format_bytes(size)}) detected in repository.",
                    severity=Severity.MEDIUM,
                    file=file,
                    context=REPOSITORY_CONTEXT,
                    size=size,
                ))


def sensitive_file_description(path: str) -> Optional[str]:
    """Description of the first sensitive-file entry the path matches, if any."""
    for suffix, description in SENSITIVE_FILES:
        if fnmatch.fnmatchcase(path, f"*{suffix}") or fnmatch.fnmatchcase(path, f"*/{suffix}"):
            return description
    return None
