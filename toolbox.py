#!/usr/bin/env python3
"""
toolbox.py

Container entrypoint for the Alpine toolbox image. Resolves the runtime
user from PUID/PGID, then runs discovered scripts once (init), installs
them into crond (cron), or execs the provided command (command).
"""

from __future__ import annotations

import grp
import logging
import os
import platform
import pwd
import re
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter


DEFAULT_CONFIG = "/etc/toolbox.yaml"
CONFIG_ENV_VAR = "TOOLBOX_CONFIG"
DEFAULT_SCRIPT_DIRS = ("/scripts", "/init", "/cron-scripts")
DEFAULT_CRON_SCHEDULE = "0 0 * * *"
DEFAULT_CRON_SCHEDULE_FILE = "/cron-schedule"
DEFAULT_CRONTAB_DIR = "/tmp/crontabs"
DEFAULT_CRON_OUTPUT = "/proc/1/fd/1"
DEFAULT_TIMEZONE = "UTC"
CRONTAB_NAME = "root"
CRONTAB_MODE = 0o600
CROND_EXECUTABLE = "crond"
CROND_START_GRACE_SECONDS = 1
IDLE_SLEEP_SECONDS = 3600
PRIVILEGE_SWITCH = "su-exec"
DEFAULT_SHELL_ARG = "sh"
SUPERUSER = "root"
SYNTHETIC_GROUP = "customgroup"
SYNTHETIC_USER = "customuser"
MIN_ID = 1000
MAX_ID = 6000
RUNNER_PATH = Path(__file__).resolve().with_name("run_script.py")

MODE_INIT = "init"
MODE_CRON = "cron"
MODE_COMMAND = "command"

ID_RE = re.compile(r"[0-9]+")
SETTINGS_KEYS = {
    "puid",
    "pgid",
    "timezone",
    "cron",
    "cron_schedule",
    "log_level",
    "script_dirs",
    "cron_schedule_file",
    "crontab_dir",
    "cron_output",
}

UTC = timezone.utc
VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")


class ToolboxError(Exception):
    """Base error for toolbox."""


class ConfigError(ToolboxError):
    """Settings or identity request validation error."""


class IdentityError(ToolboxError):
    """The runtime group or user could not be resolved."""


class ShutdownRequested(Exception):
    def __init__(self, signum: int) -> None:
        super().__init__(f"signal {signum}")
        self.signum = signum


class LogLevel(IntEnum):
    """Output levels, least to most chatty."""

    ERROR = 0
    WARN = 1
    INFORMATIONAL = 2
    VERBOSE = 3
    DEBUG = 4

    def to_logging(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFORMATIONAL: logging.INFO,
    LogLevel.VERBOSE: VERBOSE,
    LogLevel.DEBUG: logging.DEBUG,
}
LEVEL_TAGS = {
    logging.ERROR: "ERROR",
    logging.WARNING: "WARN",
    logging.INFO: "INFORMATIONAL",
    VERBOSE: "VERBOSE",
    logging.DEBUG: "DEBUG",
}
LOG_LEVEL_ALIASES = {"INFO": "INFORMATIONAL", "WARNING": "WARN"}


class _LevelTagFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.tag = LEVEL_TAGS.get(record.levelno, record.levelname)
        return super().format(record)


class _BelowError(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


def setup_logging(level: LogLevel = LogLevel.INFORMATIONAL) -> logging.Logger:
    logger = logging.getLogger("toolbox")
    logger.setLevel(level.to_logging())
    if logger.handlers:
        return logger
    formatter = _LevelTagFormatter("[%(tag)s] %(message)s")
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    stdout_handler.addFilter(_BelowError())
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(logging.ERROR)
    logger.addHandler(stdout_handler)
    logger.addHandler(stderr_handler)
    return logger


logger = setup_logging()


def log_verbose(message: str, *args: Any) -> None:
    logger.log(VERBOSE, message, *args)


@dataclass(frozen=True)
class IdentityRequest:
    uid: int
    gid: int

    @property
    def is_superuser(self) -> bool:
        return self.uid == 0 and self.gid == 0


@dataclass(frozen=True)
class Identity:
    username: str
    groupname: str
    uid: int
    gid: int

    @property
    def is_superuser(self) -> bool:
        return self.uid == 0

    def privilege_prefix(self) -> List[str]:
        if self.is_superuser:
            return []
        return [PRIVILEGE_SWITCH, self.username]


ROOT_IDENTITY = Identity(username=SUPERUSER, groupname=SUPERUSER, uid=0, gid=0)


@dataclass(frozen=True)
class ScriptDescriptor:
    name: str
    path: Path


@dataclass(frozen=True)
class Settings:
    identity: IdentityRequest
    timezone_name: str = DEFAULT_TIMEZONE
    cron: bool = False
    cron_schedule: str = DEFAULT_CRON_SCHEDULE
    log_level: LogLevel = LogLevel.INFORMATIONAL
    script_dirs: Tuple[Path, ...] = tuple(Path(d) for d in DEFAULT_SCRIPT_DIRS)
    cron_schedule_file: Path = Path(DEFAULT_CRON_SCHEDULE_FILE)
    crontab_dir: Path = Path(DEFAULT_CRONTAB_DIR)
    cron_output: str = DEFAULT_CRON_OUTPUT
    runner_command: Tuple[str, ...] = (sys.executable, str(RUNNER_PATH))

    @property
    def crontab_path(self) -> Path:
        return self.crontab_dir / CRONTAB_NAME


@dataclass(frozen=True)
class GroupEntry:
    name: str
    gid: int


@dataclass(frozen=True)
class UserEntry:
    name: str
    uid: int
    gid: int


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def parse_id(value: Any, name: str) -> int:
    text = str(value) if isinstance(value, int) and not isinstance(value, bool) else value
    if not isinstance(text, str) or not ID_RE.fullmatch(text):
        raise ConfigError(f"Invalid {name}: '{value}' (must be an integer between {MIN_ID} and {MAX_ID})")
    return int(text)


def validate_identity(uid_raw: Any, gid_raw: Any) -> IdentityRequest:
    uid = parse_id(uid_raw, "PUID")
    gid = parse_id(gid_raw, "PGID")
    if uid == 0 and gid == 0:
        return IdentityRequest(uid=0, gid=0)
    if not MIN_ID <= uid <= MAX_ID:
        raise ConfigError(f"PUID out of range: {uid} (must be 0 or between {MIN_ID} and {MAX_ID})")
    if not MIN_ID <= gid <= MAX_ID:
        raise ConfigError(f"PGID out of range: {gid} (must be 0 or between {MIN_ID} and {MAX_ID})")
    return IdentityRequest(uid=uid, gid=gid)


def normalize_level_name(raw: str) -> str:
    name = raw.strip().upper()
    return LOG_LEVEL_ALIASES.get(name, name)


def parse_log_level(raw: Optional[str]) -> LogLevel:
    if raw is None or not raw.strip():
        return LogLevel.INFORMATIONAL
    try:
        return LogLevel[normalize_level_name(raw)]
    except KeyError as exc:
        choices = ", ".join(level.name for level in LogLevel)
        raise ConfigError(f'Invalid LOG_LEVEL "{raw}" (expected one of {choices})') from exc


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{field_path} must be a non-empty string.")
    return value.strip()


def str_or_default(value: Any, default: str, field_path: str) -> str:
    # Null or blank falls back; anything else must be a string.
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{field_path} must be a string.")
    return value.strip() or default


def parse_cron_flag(value: Any, field_path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value == "true"
    raise ConfigError(f"{field_path} must be true or false.")


def parse_dirs(value: Any, field_path: str) -> Tuple[Path, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{field_path} must be a non-empty list of paths.")
    return tuple(Path(ensure_str(item, f"{field_path}[{idx}]")) for idx, item in enumerate(value))


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Settings file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError(f"Top-level settings in {config_path} must be a mapping.")
    unknown = set(payload.keys()) - SETTINGS_KEYS
    if unknown:
        raise ConfigError(f"Unknown keys in {config_path}: {sorted(unknown)}.")
    return payload


def resolve_config_path(environ: Mapping[str, str]) -> Optional[Path]:
    explicit = environ.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit)
    default = Path(DEFAULT_CONFIG)
    return default if default.exists() else None


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> Settings:
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = resolve_config_path(env)
    payload = _load_config_payload(config_path) if config_path is not None else {}

    # Environment beats the settings file; empty variables count as unset.
    def pick(env_name: str, key: str, default: Any) -> Any:
        value = env.get(env_name)
        if value:
            return value
        file_value = payload.get(key)
        return default if file_value is None else file_value

    identity = validate_identity(pick("PUID", "puid", "0"), pick("PGID", "pgid", "0"))
    timezone_name = str_or_default(pick("TZ", "timezone", None), DEFAULT_TIMEZONE, "timezone")
    cron = parse_cron_flag(pick("CRON", "cron", "false"), "cron")
    cron_schedule = str_or_default(
        pick("CRON_SCHEDULE", "cron_schedule", None), DEFAULT_CRON_SCHEDULE, "cron_schedule"
    )

    raw_level = pick("LOG_LEVEL", "log_level", LogLevel.INFORMATIONAL.name)
    try:
        log_level = parse_log_level(str(raw_level))
    except ConfigError as exc:
        logger.warning("%s; using INFORMATIONAL", exc)
        log_level = LogLevel.INFORMATIONAL

    script_dirs = tuple(Path(d) for d in DEFAULT_SCRIPT_DIRS)
    if payload.get("script_dirs") is not None:
        script_dirs = parse_dirs(payload["script_dirs"], "script_dirs")

    return Settings(
        identity=identity,
        timezone_name=timezone_name,
        cron=cron,
        cron_schedule=cron_schedule,
        log_level=log_level,
        script_dirs=script_dirs,
        cron_schedule_file=Path(
            str_or_default(payload.get("cron_schedule_file"), DEFAULT_CRON_SCHEDULE_FILE, "cron_schedule_file")
        ),
        crontab_dir=Path(str_or_default(payload.get("crontab_dir"), DEFAULT_CRONTAB_DIR, "crontab_dir")),
        cron_output=str_or_default(payload.get("cron_output"), DEFAULT_CRON_OUTPUT, "cron_output"),
    )


def load_zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def select_mode(settings: Settings, args: Sequence[str]) -> str:
    if settings.cron:
        return MODE_CRON
    if args and args[0] != DEFAULT_SHELL_ARG:
        return MODE_COMMAND
    return MODE_INIT


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class AccountDirectory:
    """Lookup and creation of OS groups and users."""

    def find_group(self, gid: int) -> Optional[GroupEntry]:
        raise NotImplementedError

    def create_group(self, name: str, gid: int) -> GroupEntry:
        raise NotImplementedError

    def find_user(self, uid: int) -> Optional[UserEntry]:
        raise NotImplementedError

    def create_user(self, name: str, uid: int, group: GroupEntry) -> UserEntry:
        raise NotImplementedError

    def set_primary_group(self, user: UserEntry, group: GroupEntry) -> None:
        raise NotImplementedError


class SystemAccounts(AccountDirectory):
    """Backed by the passwd/group databases and the image's account tools.

    BusyBox images get addgroup/adduser; anything else gets shadow-utils.
    """

    def __init__(self, run: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> None:
        self._run = run
        self._busybox: Optional[bool] = None

    def uses_busybox(self) -> bool:
        if self._busybox is None:
            adduser = shutil.which("adduser")
            self._busybox = adduser is not None and Path(adduser).resolve().name == "busybox"
        return self._busybox

    def find_group(self, gid: int) -> Optional[GroupEntry]:
        try:
            entry = grp.getgrgid(gid)
        except KeyError:
            return None
        return GroupEntry(name=entry.gr_name, gid=entry.gr_gid)

    def create_group(self, name: str, gid: int) -> GroupEntry:
        if self.uses_busybox():
            command = ["addgroup", "-g", str(gid), name]
        else:
            command = ["groupadd", "-g", str(gid), name]
        self._call(command, f"Failed to create group '{name}' with GID {gid}")
        return GroupEntry(name=name, gid=gid)

    def find_user(self, uid: int) -> Optional[UserEntry]:
        try:
            entry = pwd.getpwuid(uid)
        except KeyError:
            return None
        return UserEntry(name=entry.pw_name, uid=entry.pw_uid, gid=entry.pw_gid)

    def create_user(self, name: str, uid: int, group: GroupEntry) -> UserEntry:
        if self.uses_busybox():
            command = ["adduser", "-D", "-H", "-u", str(uid), "-G", group.name, name]
        else:
            command = ["useradd", "-M", "-u", str(uid), "-g", group.name, name]
        self._call(command, f"Failed to create user '{name}' with UID {uid}")
        return UserEntry(name=name, uid=uid, gid=group.gid)

    def set_primary_group(self, user: UserEntry, group: GroupEntry) -> None:
        self._call(
            ["usermod", "-g", group.name, user.name],
            f"Failed to set primary group of '{user.name}' to '{group.name}'",
        )

    def _call(self, command: List[str], failure: str) -> None:
        logger.debug("Running: %s", " ".join(shlex.quote(part) for part in command))
        try:
            result = self._run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise IdentityError(f"{failure}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            suffix = f": {detail}" if detail else ""
            raise IdentityError(f"{failure} (exit code {result.returncode}){suffix}")


def resolve_identity(request: IdentityRequest, accounts: AccountDirectory) -> Identity:
    if request.is_superuser:
        logger.debug("UID and GID are 0 (root) - using root user directly")
        return ROOT_IDENTITY

    group = accounts.find_group(request.gid)
    if group is not None:
        logger.info("Found existing group '%s' with GID: %s", group.name, request.gid)
    else:
        logger.info("No existing group found with GID: %s, creating new group", request.gid)
        group = accounts.create_group(SYNTHETIC_GROUP, request.gid)

    user = accounts.find_user(request.uid)
    if user is not None:
        logger.info("Found existing user '%s' with UID: %s", user.name, request.uid)
        if user.gid != group.gid:
            try:
                accounts.set_primary_group(user, group)
            except IdentityError as exc:
                logger.warning("Keeping current primary group for '%s': %s", user.name, exc)
    else:
        logger.info("No existing user found with UID: %s, creating new user", request.uid)
        user = accounts.create_user(SYNTHETIC_USER, request.uid, group)

    logger.info("Using user: %s (UID: %s, GID: %s)", user.name, request.uid, request.gid)
    return Identity(username=user.name, groupname=group.name, uid=request.uid, gid=group.gid)


# ---------------------------------------------------------------------------
# Script discovery
# ---------------------------------------------------------------------------


def is_eligible_script(path: Path) -> bool:
    # is_file() follows symlinks, matching `find -L ... -type f`.
    return path.name.endswith(".sh") and path.is_file() and os.access(path, os.X_OK)


def scan_directory(directory: Path) -> List[ScriptDescriptor]:
    if not directory.is_dir():
        return []
    found: List[ScriptDescriptor] = []
    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if is_eligible_script(entry):
            found.append(ScriptDescriptor(name=entry.name, path=directory / entry.name))
    return found


def discover_scripts(script_dirs: Sequence[Path]) -> List[ScriptDescriptor]:
    scripts: List[ScriptDescriptor] = []
    for directory in script_dirs:
        if directory.is_dir():
            logger.info("Found scripts directory: %s", directory)
            scripts.extend(scan_directory(directory))
    return scripts


# ---------------------------------------------------------------------------
# Startup summary
# ---------------------------------------------------------------------------


def kernel_release() -> str:
    return platform.release() or "unknown"


def format_startup_time(timezone_name: str, now: Optional[datetime] = None) -> str:
    zone: Optional[tzinfo] = load_zone(timezone_name)
    if zone is None:
        logger.warning('Unknown timezone "%s"; showing startup time in UTC', timezone_name)
        zone = UTC
    current = (now or datetime.now(tz=UTC)).astimezone(zone)
    return current.strftime("%Y-%m-%d %H:%M:%S %Z")


def cron_source_description(settings: Settings) -> str:
    if settings.cron_schedule_file.is_file():
        return f"custom file: {settings.cron_schedule_file}"
    return f"env CRON_SCHEDULE: {settings.cron_schedule}"


def format_startup_info(settings: Settings, mode: str, now: Optional[datetime] = None) -> List[str]:
    counts = [(directory, len(scan_directory(directory))) for directory in settings.script_dirs]
    total = sum(count for _, count in counts)
    found = ", ".join(f"{directory}({count})" for directory, count in counts if count) or "none"

    lines = [
        "== Alpine Toolbox Startup ==",
        f"Kernel: {kernel_release()}",
        f"Mode: {mode}",
        f"User ID: {settings.identity.uid}",
        f"Group ID: {settings.identity.gid}",
        f"Timezone: {settings.timezone_name}",
        f"Startup time: {format_startup_time(settings.timezone_name, now)}",
        f"Log level: {settings.log_level.name}",
        f"Script directories: {found} (total: {total})",
    ]
    if mode == MODE_CRON:
        lines.append(f"Cron source: {cron_source_description(settings)}")
    lines.append("=" * 29)
    return lines


def print_startup_info(settings: Settings, mode: str) -> None:
    for line in format_startup_info(settings, mode):
        print(line, flush=True)


# ---------------------------------------------------------------------------
# Child processes and crond
# ---------------------------------------------------------------------------


class ChildProcess:
    """Handle on a spawned child; exit codes follow shell conventions."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process

    @classmethod
    def spawn(cls, command: Sequence[str], quiet: bool = False) -> "ChildProcess":
        if quiet:
            process = subprocess.Popen(
                list(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        else:
            process = subprocess.Popen(list(command))
        return cls(process)

    @property
    def pid(self) -> int:
        return self._process.pid

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def wait(self) -> int:
        return shell_exit_code(self._process.wait())

    def terminate(self) -> None:
        self._process.terminate()


def shell_exit_code(returncode: int) -> int:
    # Killed by signal N -> 128 + N, as a shell reports it.
    return 128 - returncode if returncode < 0 else returncode


class Scheduler:
    """Starts the cron daemon against a crontab directory."""

    def start(self, crontab_dir: Path) -> Optional[ChildProcess]:
        raise NotImplementedError


class CrondScheduler(Scheduler):
    def __init__(self, executable: str = CROND_EXECUTABLE) -> None:
        self.executable = executable

    def start(self, crontab_dir: Path) -> Optional[ChildProcess]:
        command = [self.executable, "-f", "-l", "2", "-c", str(crontab_dir)]
        logger.debug("Running: %s", " ".join(shlex.quote(part) for part in command))
        try:
            return ChildProcess.spawn(command)
        except OSError as exc:
            logger.warning("Unable to launch %s: %s", self.executable, exc)
            return None


# ---------------------------------------------------------------------------
# Cron entries
# ---------------------------------------------------------------------------


def runner_command(settings: Settings, identity: Identity, script: ScriptDescriptor) -> List[str]:
    return [*identity.privilege_prefix(), *settings.runner_command, str(script.path), script.name]


def build_cron_entries(
    settings: Settings,
    identity: Identity,
    scripts: Sequence[ScriptDescriptor],
) -> List[str]:
    entries: List[str] = []
    for script in scripts:
        logger.info("Setting up cron job for: %s (schedule: %s)", script.name, settings.cron_schedule)
        command = " ".join(shlex.quote(part) for part in runner_command(settings, identity, script))
        # Redirect outside su-exec so it covers the whole job.
        entries.append(f"{settings.cron_schedule} {command} >> {settings.cron_output} 2>&1")
    return entries


def check_cron_schedule(
    expression: str,
    timezone_name: str,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    if not croniter.is_valid(expression):
        logger.warning(
            'Cron schedule "%s" is not recognised by croniter; passing it to crond unchanged',
            expression,
        )
        return None
    zone: tzinfo = load_zone(timezone_name) or UTC
    base = (now or datetime.now(tz=UTC)).astimezone(zone)
    next_fire = croniter(expression, base).get_next(datetime)
    log_verbose("Next run for schedule %s: %s", expression, next_fire.isoformat())
    return next_fire


def write_crontab(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        os.chmod(tmp_name, CRONTAB_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def setup_cron_jobs(settings: Settings, identity: Identity) -> bytes:
    schedule_file = settings.cron_schedule_file
    if schedule_file.is_file():
        # Lines are used as written; non-root jobs must carry their own su-exec.
        logger.info("Using custom cron schedule from %s", schedule_file)
        content = schedule_file.read_bytes()
    else:
        scripts = discover_scripts(settings.script_dirs)
        if scripts:
            check_cron_schedule(settings.cron_schedule, settings.timezone_name)
        else:
            logger.warning("No scripts found. No cron jobs will be created.")
        entries = build_cron_entries(settings, identity, scripts)
        content = "".join(f"{entry}\n" for entry in entries).encode("utf-8")
    write_crontab(settings.crontab_path, content)
    return content


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------


def run_init_mode(
    settings: Settings,
    identity: Identity,
    call: Callable[[List[str]], int] = subprocess.call,
) -> int:
    logger.info("Init mode enabled - executing scripts and exiting")
    scripts = discover_scripts(settings.script_dirs)
    if not scripts:
        logger.warning("No init scripts found. Container will exit.")
        return 0

    for idx, script in enumerate(scripts, start=1):
        logger.info("Executing init script: %s", script.name)
        log_verbose("[%s/%s] Executing: %s", idx, len(scripts), script.path)
        command = runner_command(settings, identity, script)
        try:
            exit_code = shell_exit_code(call(command))
        except FileNotFoundError:
            logger.error("Command not found: %s", command[0])
            exit_code = 127
        except OSError as exc:
            logger.error("Cannot execute %s: %s", command[0], exc)
            exit_code = 126
        if exit_code != 0:
            logger.error("❌ %s failed with exit code %s", script.name, exit_code)
            return exit_code
        logger.info("✅ %s completed successfully", script.name)

    logger.info("All init scripts completed successfully. Container exiting.")
    return 0


def run_command_mode(
    identity: Identity,
    args: Sequence[str],
    execvp: Callable[[str, List[str]], Any] = os.execvp,
) -> int:
    logger.info("Command mode enabled - executing provided command")
    log_verbose("Command: %s", " ".join(args))
    argv = [*identity.privilege_prefix(), *args]
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        execvp(argv[0], argv)
    except FileNotFoundError:
        logger.error("Command not found: %s", argv[0])
        return 127
    except OSError as exc:
        logger.error("Cannot execute %s: %s", argv[0], exc)
        return 126
    return 0


def _raise_shutdown(signum: int, _frame: Any) -> None:
    raise ShutdownRequested(signum)


def idle_until_stopped(
    child: Optional[ChildProcess],
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    previous = signal.signal(signal.SIGTERM, _raise_shutdown)
    try:
        while True:
            sleep(IDLE_SLEEP_SECONDS)
    except KeyboardInterrupt:
        logger.info("Interrupted by user; stopping crond.")
        exit_code = 130
    except ShutdownRequested as exc:
        logger.info("Received signal %s; stopping crond.", exc.signum)
        exit_code = 128 + exc.signum
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)

    if child is not None and child.is_alive():
        child.terminate()
        child.wait()
    return exit_code


def run_cron_mode(
    settings: Settings,
    identity: Identity,
    scheduler: Scheduler,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    logger.info("CRON mode enabled - setting up cron jobs and running persistently")
    content = setup_cron_jobs(settings, identity)
    if not content:
        logger.warning("No cron jobs found. Container will exit.")
        return 0

    logger.info("Starting crond...")
    child = scheduler.start(settings.crontab_dir)
    sleep(CROND_START_GRACE_SECONDS)
    # Checked once; a crond that dies later goes unnoticed.
    if child is None or not child.is_alive():
        logger.warning("crond failed to start")
    else:
        logger.info("crond started successfully (PID: %s)", child.pid)

    logger.info("Cron jobs detected - keeping container running...")
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Cron jobs:")
        for line in content.decode("utf-8", errors="replace").splitlines():
            logger.debug("  %s", line)
    logger.info("Container will run indefinitely for cron jobs. Use Ctrl+C to stop.")
    return idle_until_stopped(child, sleep)


def export_runtime_env(settings: Settings, identity: Identity) -> None:
    # Inherited by the runner and by the scripts themselves.
    os.environ["CONTAINER_USER"] = identity.username
    os.environ["LOG_LEVEL"] = settings.log_level.name


def run(
    args: Sequence[str],
    settings: Settings,
    accounts: AccountDirectory,
    scheduler: Scheduler,
) -> int:
    mode = select_mode(settings, args)
    print_startup_info(settings, mode)

    logger.info("Creating user with UID: %s, GID: %s", settings.identity.uid, settings.identity.gid)
    identity = resolve_identity(settings.identity, accounts)
    export_runtime_env(settings, identity)

    if mode == MODE_CRON:
        return run_cron_mode(settings, identity, scheduler)
    if mode == MODE_COMMAND:
        return run_command_mode(identity, args)
    return run_init_mode(settings, identity)


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        settings = load_settings()
        setup_logging(settings.log_level)
        return run(args, settings, SystemAccounts(), CrondScheduler())
    except ToolboxError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
