#!/usr/bin/env -S python3 -u

"""
ocserv Prometheus Exporter

Description:
---------------------

Exposes the state of an OpenConnect VPN server (ocserv) as Prometheus
metrics. The exporter supports:
- Periodic polling of the ocserv control socket through occtl
- Server-wide status gauges and per-session traffic gauges
- Independent failure tracking for status and session scrapes
- Health check endpoint with scrape statistics
- Systemd integration

Usage:
---------------------
1. Optionally create ocserv_exporter.yml next to the script, or point
   OCSERV_EXPORTER_CONFIG at a YAML file
2. Run the script directly or via systemd service (as a user that can
   reach the occtl socket)
3. Monitor metrics at http://127.0.0.1:8000/metrics
4. Check exporter health at http://127.0.0.1:8000/health

Configuration:
---------------------

exporter:
    listen: "127.0.0.1:8000"             # HTTP listen address (host:port)
    socket_path: "/var/run/occtl.socket" # ocserv control socket
    occtl_path: "occtl"                  # occtl binary, resolved on PATH
    collection:
        interval_sec: 30         # Delay between occtl scrapes
        command_timeout_sec: 10  # Upper bound for a single occtl call
        failure_threshold: 5     # Consecutive failures before unhealthy
    logging:
        level: "INFO"            # Main logging level
        console_level: "INFO"    # Console output level
        file: null               # Optional rotating log file path
        file_level: "DEBUG"      # File logging level
        journal_level: "WARNING" # Systemd journal level
        max_bytes: 10485760      # Log file size limit (10MB)
        backup_count: 3          # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

All keys are optional. A missing configuration file means defaults.

HTTP API:
---------------------
GET /metrics
    Prometheus exposition of the latest snapshot

GET /health
    JSON scrape statistics

    Response Codes:
        200: Both scrape categories below the failure threshold
        503: Status or session scrapes failing repeatedly

Exposed Metrics:
---------------------
occtl_status_scrape_error_total      Failed `occtl show status` calls
occtl_users_scrape_error_total       Failed `occtl show users` calls
ocserv_*                             Server-wide gauges (no labels)
ocserv_user_*                        Per-session gauges labelled by
                                     username, remote_ip, mtu, ocserv_ipv4,
                                     ocserv_ipv6, device, user_agent

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- Durations and timestamps are exported in seconds as reported by occtl
- A failed status scrape zeroes the server gauges until the next success
- A failed session scrape drops every per-session series
- Sessions with identical label values share one series; the last one
  listed by occtl wins, so series can be fewer than connected sessions
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import json
import logging
import math
import os
import shutil
import signal
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union
)
from wsgiref.simple_server import WSGIRequestHandler, make_server

# Third party imports
from prometheus_client import (
    CollectorRegistry, Counter, Gauge, make_wsgi_app
)
from prometheus_client.exposition import ThreadingWSGIServer
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExporterError(Exception):
    """Base class for exporter errors."""
    pass

class ConfigurationError(ExporterError):
    """Error in exporter configuration."""
    pass

class OcctlError(ExporterError):
    """Base class for control interface errors."""
    pass

class TransportError(OcctlError):
    """occtl could not be run, failed, timed out or could not reach ocserv."""
    pass

class DecodeError(OcctlError):
    """occtl output was received but did not have the expected structure."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source, Configuration and Logging
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file locations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    CONFIG_ENV_VAR = 'OCSERV_EXPORTER_CONFIG'
    LOGGER_NAME = 'ocserv_exporter'

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def config_path(self) -> Path:
        """Configuration file path, which may not exist."""
        override = os.getenv(self.CONFIG_ENV_VAR)
        if override:
            return Path(override).expanduser()
        return self.script_dir / f"{self.LOGGER_NAME}.yml"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Exporter configuration with defaults and validation."""

    DEFAULT_LISTEN = '127.0.0.1:8000'
    DEFAULT_SOCKET_PATH = '/var/run/occtl.socket'
    DEFAULT_OCCTL_PATH = 'occtl'
    DEFAULT_INTERVAL = 30
    DEFAULT_COMMAND_TIMEOUT = 10
    DEFAULT_FAILURE_THRESHOLD = 5

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, source: Optional[ProgramSource] = None):
        """Initialize configuration with defaults; call load() to read the file."""
        self._source = source or ProgramSource()
        self._config = {'exporter': self._get_exporter_defaults()}
        self._loaded_from: Optional[Path] = None
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'listen': self.DEFAULT_LISTEN,
            'socket_path': self.DEFAULT_SOCKET_PATH,
            'occtl_path': self.DEFAULT_OCCTL_PATH,
            'collection': {
                'interval_sec': self.DEFAULT_INTERVAL,
                'command_timeout_sec': self.DEFAULT_COMMAND_TIMEOUT,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self, file_config: Optional[Dict[str, Any]] = None) -> None:
        """Load configuration from the YAML file, or from file_config if given.

        Raises:
            ConfigurationError: If the file cannot be parsed or a value is invalid
        """
        if file_config is None:
            file_config = self._read_file()

        if not isinstance(file_config, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        exporter_config = file_config.get('exporter') or {}
        if not isinstance(exporter_config, dict):
            raise ConfigurationError("'exporter' section must be a mapping")

        merged = self._merge_with_defaults(self._get_exporter_defaults(), exporter_config)
        self._validate_exporter_section(merged)
        self._config = {'exporter': merged}

    def _read_file(self) -> Dict[str, Any]:
        """Read the YAML configuration file; a missing file means defaults."""
        path = self._source.config_path
        if not path.is_file():
            self._loaded_from = None
            return {}

        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {path}: {e}") from e

        self._loaded_from = path
        return content

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Validate the merged exporter configuration."""
        self.parse_listen(config['listen'])

        for key in ('socket_path', 'occtl_path'):
            value = config[key]
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"Invalid {key} {value!r}: must be a non-empty string")

        collection = config['collection']
        for key in ('interval_sec', 'command_timeout_sec'):
            value = collection[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"Invalid {key} {value!r}: must be a positive number")

        threshold = collection['failure_threshold']
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ConfigurationError(f"Invalid failure_threshold {threshold!r}: must be a positive integer")

        log_file = config['logging'].get('file')
        if log_file is not None and not isinstance(log_file, str):
            raise ConfigurationError(f"Invalid logging file {log_file!r}: must be a path")

    @staticmethod
    def parse_listen(listen: Any) -> Tuple[str, int]:
        """Split a 'host:port' listen address into its parts.

        IPv6 hosts may be given in brackets ("[::1]:8000"). An empty host
        binds every interface.
        """
        if not isinstance(listen, str) or ':' not in listen:
            raise ConfigurationError(f"Invalid listen address {listen!r}: expected host:port")

        host, _, port_text = listen.rpartition(':')
        host = host.strip('[]')
        try:
            port = int(port_text)
        except ValueError:
            raise ConfigurationError(f"Invalid listen port in {listen!r}") from None

        if port < 0 or port > 65535:
            raise ConfigurationError(f"Invalid listen port {port}: must be between 0-65535")
        return host, port

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get exporter uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def source(self) -> ProgramSource:
        return self._source

    @property
    def loaded_from(self) -> Optional[Path]:
        """Path of the configuration file in use, None when running on defaults."""
        return self._loaded_from

    @property
    def start_time(self) -> datetime:
        return self._start_time

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        return self._config['exporter']

    @property
    def collection(self) -> Dict[str, Any]:
        return self.exporter['collection']

    @property
    def logging(self) -> Dict[str, Any]:
        return self.exporter['logging']

    @property
    def listen_address(self) -> Tuple[str, int]:
        """Get (host, port) to serve HTTP on."""
        return self.parse_listen(self.exporter['listen'])

    @property
    def socket_path(self) -> str:
        return self.exporter['socket_path']

    @property
    def occtl_path(self) -> str:
        return self.exporter['occtl_path']

    @property
    def interval(self) -> float:
        """Get refresh interval in seconds."""
        return self.collection['interval_sec']

    @property
    def command_timeout(self) -> float:
        """Get occtl command timeout in seconds."""
        return self.collection['command_timeout_sec']

    @property
    def failure_threshold(self) -> int:
        """Get consecutive failure count before reporting unhealthy."""
        return self.collection['failure_threshold']

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg(*args, **kwargs))
            # Handle string formatting
            elif args or kwargs:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg.format(*args, **kwargs))
            # Handle simple strings
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg)

    def __init__(self, source: ProgramSource, config: ProgramConfig):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Loaded program configuration
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            If file handler setup fails, console logging keeps working and
            the failure is reported through it.
        """
        logger = logging.getLogger(self.source.LOGGER_NAME)
        logger.handlers.clear()
        logger.propagate = False

        log_settings = self.config.logging
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_settings['console_level'])
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
        self._handlers['console'] = console_handler

        # File handler
        if log_settings.get('file'):
            try:
                file_handler = RotatingFileHandler(
                    Path(log_settings['file']).expanduser(),
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
                self._handlers['file'] = file_handler
            except OSError as e:
                logger.error(f"Failed to open log file {log_settings['file']}: {e}")

        # Journal handler for systemd
        if self.config.running_under_systemd:
            journal_handler = journal.JournaldLogHandler()
            journal_handler.setLevel(log_settings['journal_level'])
            journal_handler.setFormatter(formatter)
            logger.addHandler(journal_handler)
            self._handlers['journal'] = journal_handler

        return logger

    def close(self) -> None:
        """Flush and close all handlers."""
        for name in list(self._handlers):
            handler = self._handlers.pop(name)
            self._logger.removeHandler(handler)
            handler.close()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Snapshot Data Model
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

Number = Union[int, float]

@dataclass(frozen=True)
class ServerStatus:
    """Server-wide figures from `occtl show status`.

    Durations are in seconds and start_time is a unix timestamp, exactly as
    occtl reports them in its raw_* fields.
    """
    start_time: Number
    active_sessions: Number
    handled_sessions: Number
    ips_banned: Number
    total_authentication_failures: Number
    sessions_handled: Number
    timed_out_sessions: Number
    timed_out_idle_sessions: Number
    closed_error_sessions: Number
    authentication_failures: Number
    average_auth_time: Number
    max_auth_time: Number
    average_session_time: Number
    max_session_time: Number
    tx_bytes: Number
    rx_bytes: Number
    status: str = ''
    server_pid: Optional[int] = None
    sec_mod_pid: Optional[int] = None

@dataclass(frozen=True)
class SessionRecord:
    """One connected client from `occtl show users`."""
    username: str
    remote_ip: str
    mtu: str
    ipv4: str
    ipv6: str
    device: str
    user_agent: str
    connected_at: Number
    tx_bytes: Number
    rx_bytes: Number
    session_id: Optional[int] = None
    state: str = ''

    def label_values(self) -> Tuple[str, ...]:
        """Label values in SESSION_LABELS order."""
        return (
            self.username, self.remote_ip, self.mtu, self.ipv4,
            self.ipv6, self.device, self.user_agent
        )

@dataclass(frozen=True)
class Snapshot:
    """Read-only view of the store. None means never fetched successfully."""
    status: Optional[ServerStatus]
    sessions: Optional[Tuple[SessionRecord, ...]]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Response Parsing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# ServerStatus attribute -> occtl JSON key
STATUS_FIELDS: Tuple[Tuple[str, str], ...] = (
    ('start_time', 'raw_up_since'),
    ('active_sessions', 'Active sessions'),
    ('handled_sessions', 'Total sessions'),
    ('ips_banned', 'IPs in ban list'),
    ('total_authentication_failures', 'Total authentication failures'),
    ('sessions_handled', 'Sessions handled'),
    ('timed_out_sessions', 'Timed out sessions'),
    ('timed_out_idle_sessions', 'Timed out (idle) sessions'),
    ('closed_error_sessions', 'Closed due to error sessions'),
    ('authentication_failures', 'Authentication failures'),
    ('average_auth_time', 'raw_avg_auth_time'),
    ('max_auth_time', 'raw_max_auth_time'),
    ('average_session_time', 'raw_avg_session_time'),
    ('max_session_time', 'raw_max_session_time'),
    ('tx_bytes', 'raw_tx'),
    ('rx_bytes', 'raw_rx'),
)

# SessionRecord attribute -> occtl JSON key
SESSION_NUMERIC_FIELDS: Tuple[Tuple[str, str], ...] = (
    ('connected_at', 'raw_connected_at'),
    ('tx_bytes', 'TX'),
    ('rx_bytes', 'RX'),
)
SESSION_REQUIRED_LABELS: Tuple[Tuple[str, str], ...] = (
    ('username', 'Username'),
    ('remote_ip', 'Remote IP'),
)
# occtl leaves these out when they do not apply (e.g. no IPv6 lease)
SESSION_OPTIONAL_LABELS: Tuple[Tuple[str, str], ...] = (
    ('mtu', 'MTU'),
    ('ipv4', 'IPv4'),
    ('ipv6', 'IPv6'),
    ('device', 'Device'),
    ('user_agent', 'User-Agent'),
)

def _decode_text(raw: Union[bytes, str], what: str) -> str:
    if isinstance(raw, str):
        return raw
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecodeError(f"{what} output is not valid UTF-8: {e}") from e

def _load_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON in {what} output: {e}") from e

def _require(data: Dict[str, Any], key: str, what: str) -> Any:
    if key not in data:
        raise DecodeError(f"Key '{key}' missing from {what} output")
    return data[key]

def _as_number(value: Any, key: str) -> Number:
    """Convert a JSON number or numeric string to int (preferred) or float."""
    if isinstance(value, bool):
        raise DecodeError(f"Value of '{key}' is a boolean, expected a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise DecodeError(f"Could not convert '{value}' of '{key}' to a number") from None
    else:
        raise DecodeError(f"Value of '{key}' has type {type(value).__name__}, expected a number")

    # json.loads accepts NaN and Infinity; neither is a usable counter
    if not math.isfinite(number):
        raise DecodeError(f"Value '{value}' of '{key}' is not a finite number")
    return number

def _as_label(value: Any, key: str) -> str:
    """Convert a scalar JSON value to a label string. None becomes ''."""
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise DecodeError(f"Value of '{key}' has type {type(value).__name__}, expected a string")

def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    if data.get(key) is None:
        return None
    return int(_as_number(data[key], key))

def parse_status(raw: Union[bytes, str]) -> ServerStatus:
    """Decode `occtl -j show status` output.

    Raises:
        DecodeError: On invalid JSON, a missing key or a non-numeric value
    """
    text = _decode_text(raw, 'status')
    if not text.strip():
        raise DecodeError("Empty status output")

    data = _load_json(text, 'status')
    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object for status, got {type(data).__name__}")

    values = {
        attr: _as_number(_require(data, key, 'status'), key)
        for attr, key in STATUS_FIELDS
    }
    return ServerStatus(
        status=_as_label(data.get('Status'), 'Status'),
        server_pid=_optional_int(data, 'Server PID'),
        sec_mod_pid=_optional_int(data, 'Sec-mod PID'),
        **values
    )

def _parse_session(entry: Any, index: int) -> SessionRecord:
    what = f"users entry {index}"
    if not isinstance(entry, dict):
        raise DecodeError(f"Expected a JSON object for {what}, got {type(entry).__name__}")

    values: Dict[str, Any] = {}
    for attr, key in SESSION_REQUIRED_LABELS:
        values[attr] = _as_label(_require(entry, key, what), key)
    for attr, key in SESSION_OPTIONAL_LABELS:
        values[attr] = _as_label(entry.get(key), key)
    for attr, key in SESSION_NUMERIC_FIELDS:
        values[attr] = _as_number(_require(entry, key, what), key)

    return SessionRecord(
        session_id=_optional_int(entry, 'ID'),
        state=_as_label(entry.get('State'), 'State'),
        **values
    )

def parse_sessions(raw: Union[bytes, str]) -> Tuple[SessionRecord, ...]:
    """Decode `occtl -j show users` output.

    Empty output, `[]` and `null` all mean no connected users.

    Raises:
        DecodeError: On invalid JSON or a malformed user entry
    """
    text = _decode_text(raw, 'users')
    if not text.strip():
        return ()

    data = _load_json(text, 'users')
    if data is None:
        return ()
    if not isinstance(data, list):
        raise DecodeError(f"Expected a JSON array for users, got {type(data).__name__}")

    return tuple(_parse_session(entry, index) for index, entry in enumerate(data))

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Command Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CommandTransport(ABC):
    """Runs a named administrative command against the control endpoint."""

    @abstractmethod
    async def execute(self, command: str) -> bytes:
        """Return raw command output.

        Raises:
            TransportError: If the command could not be run or failed
        """
        ...

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class OcctlTransport(CommandTransport):
    """Executes occtl in JSON mode against the ocserv control socket."""

    COMMANDS: Dict[str, Tuple[str, ...]] = {
        'status': ('show', 'status'),
        'users': ('show', 'users'),
    }

    def __init__(
        self,
        occtl_path: str,
        socket_path: str,
        timeout: float,
        logger: logging.Logger
    ):
        self.occtl_path = occtl_path
        self.socket_path = socket_path
        self.timeout = timeout
        self.logger = logger

    def build_command(self, command: str) -> List[str]:
        """Build the occtl argument vector for a named command."""
        try:
            args = self.COMMANDS[command]
        except KeyError:
            raise TransportError(f"Unknown occtl command: {command}") from None
        return [self.occtl_path, '-s', self.socket_path, '-j', *args]

    async def execute(self, command: str) -> bytes:
        """Execute occtl and return its stdout."""
        argv = self.build_command(command)
        self.logger.verbose(f"Executing command: {' '.join(argv)}")
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise TransportError(f"Failed to run {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TransportError(
                f"occtl {command} timed out after {self.timeout}s"
            ) from None

        execution_time = time.monotonic() - start_time
        self.logger.verbose(
            f"occtl {command} exited with {process.returncode} in {execution_time:.3f}s"
        )

        if process.returncode != 0:
            message = stderr.decode(errors='replace').strip() or stdout.decode(errors='replace').strip()
            raise TransportError(
                f"occtl {command} exited with status {process.returncode}: {message}"
            )

        return stdout

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Control Client
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class OcctlClient:
    """Fetches and decodes ocserv status and session listings.

    Neither fetch touches shared state; the refresh loop owns the store.
    """

    def __init__(self, transport: CommandTransport, logger: logging.Logger):
        self.transport = transport
        self.logger = logger

    async def fetch_status(self) -> ServerStatus:
        """Fetch server status.

        Raises:
            TransportError: If occtl could not be run or failed
            DecodeError: If the output is malformed
        """
        raw = await self.transport.execute('status')
        self.logger.verbose(lambda: f"Raw status output: {raw!r}")
        return parse_status(raw)

    async def fetch_sessions(self) -> Tuple[SessionRecord, ...]:
        """Fetch connected sessions. An empty tuple is a valid result.

        Raises:
            TransportError: If occtl could not be run or failed
            DecodeError: If the output is malformed
        """
        raw = await self.transport.execute('users')
        self.logger.verbose(lambda: f"Raw users output: {raw!r}")
        return parse_sessions(raw)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Snapshot Store
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for one scrape category.

    Attributes:
        attempts (int): Total scrape attempts
        failures (int): Failed scrapes
        consecutive_failures (int): Current streak of failures
        last_duration (float): Duration of the last scrape in seconds
        last_error (str): Message of the last failure
        last_success_datetime (datetime): Time of the last successful scrape
    """
    attempts: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_duration: float = 0
    last_error: Optional[str] = None
    last_success_datetime: Optional[datetime] = None

    def record_success(self, duration: float) -> None:
        self.attempts += 1
        self.consecutive_failures = 0
        self.last_duration = duration
        self.last_success_datetime = ProgramConfig.now_utc()

    def record_failure(self, error: str, duration: float) -> None:
        self.attempts += 1
        self.failures += 1
        self.consecutive_failures += 1
        self.last_duration = duration
        self.last_error = error

    def is_healthy(self, threshold: int) -> bool:
        """Determine if statistics indicate healthy operation."""
        return self.consecutive_failures < threshold

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_duration_seconds": round(self.last_duration, 3),
            "last_error": self.last_error,
            "last_success_datetime_utc": (
                self.last_success_datetime.isoformat()
                if self.last_success_datetime else None
            )
        }

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

SESSION_LABELS: Tuple[str, ...] = (
    'username', 'remote_ip', 'mtu', 'ocserv_ipv4', 'ocserv_ipv6', 'device', 'user_agent'
)

# ServerStatus attribute -> (metric name, help)
STATUS_GAUGES: Tuple[Tuple[str, str, str], ...] = (
    ('start_time', 'ocserv_start_time_seconds',
     'Start time of ocserv since unix epoch in seconds.'),
    ('active_sessions', 'ocserv_active_sessions',
     'Current number of users connected.'),
    ('handled_sessions', 'ocserv_handled_sessions',
     'Total number of sessions handled since server is up.'),
    ('ips_banned', 'ocserv_ips_banned',
     'Total number of IPs banned.'),
    ('total_authentication_failures', 'ocserv_total_authentication_failures',
     'Total number of authentication failures since server is up.'),
    ('sessions_handled', 'ocserv_sessions_handled',
     'Total number of sessions handled since last stats reset.'),
    ('timed_out_sessions', 'ocserv_timed_out_sessions',
     'Total number of timed out sessions since last stats reset.'),
    ('timed_out_idle_sessions', 'ocserv_timed_out_idle_sessions',
     'Total number of sessions timed out (idle) since last stats reset.'),
    ('closed_error_sessions', 'ocserv_closed_error_sessions',
     'Total number of sessions closed due to error since last stats reset.'),
    ('authentication_failures', 'ocserv_authentication_failures',
     'Total number of authentication failures since last stats reset.'),
    ('average_auth_time', 'ocserv_average_auth_time_seconds',
     'Average time in seconds spent to authenticate users since last stats reset.'),
    ('max_auth_time', 'ocserv_max_auth_time_seconds',
     'Maximum time in seconds spent to authenticate users since last stats reset.'),
    ('average_session_time', 'ocserv_average_session_time_seconds',
     'Average session time in seconds since last stats reset.'),
    ('max_session_time', 'ocserv_max_session_time_seconds',
     'Max session time in seconds since last stats reset.'),
    ('tx_bytes', 'ocserv_tx_bytes',
     'Total TX usage in bytes since last stats reset.'),
    ('rx_bytes', 'ocserv_rx_bytes',
     'Total RX usage in bytes since last stats reset.'),
)

# SessionRecord attribute -> (metric name, help)
SESSION_GAUGES: Tuple[Tuple[str, str, str], ...] = (
    ('tx_bytes', 'ocserv_user_tx_bytes', 'Total TX usage in bytes of a user.'),
    ('rx_bytes', 'ocserv_user_rx_bytes', 'Total RX usage in bytes of a user.'),
    ('connected_at', 'ocserv_user_start_time_seconds',
     'Start time of user session since unix epoch in seconds.'),
)

class SnapshotStore:
    """Latest snapshot plus every exported metric, behind one lock.

    Status and sessions are committed in separate critical sections, so a
    reader may see a status from the current refresh next to sessions from
    the previous one, but never a half-written category.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.lock = threading.Lock()
        self.registry = registry if registry is not None else CollectorRegistry()
        self._status: Optional[ServerStatus] = None
        self._sessions: Optional[Tuple[SessionRecord, ...]] = None
        self.stats: Dict[str, CollectionStats] = {
            'status': CollectionStats(),
            'users': CollectionStats()
        }

        self._status_scrape_errors = Counter(
            'occtl_status_scrape_error_total',
            'Total number of errors that occurred when calling occtl show status.',
            registry=self.registry
        )
        self._users_scrape_errors = Counter(
            'occtl_users_scrape_error_total',
            'Total number of errors that occurred when calling occtl show users.',
            registry=self.registry
        )
        self._status_gauges: Dict[str, Gauge] = {
            attr: Gauge(name, description, registry=self.registry)
            for attr, name, description in STATUS_GAUGES
        }
        self._session_gauges: Dict[str, Gauge] = {
            attr: Gauge(name, description, labelnames=SESSION_LABELS, registry=self.registry)
            for attr, name, description in SESSION_GAUGES
        }

    def update_status(self, status: ServerStatus, duration: float = 0) -> None:
        """Replace the status and set every server gauge from it."""
        with self.lock:
            self._status = status
            for attr, gauge in self._status_gauges.items():
                gauge.set(getattr(status, attr))
            self.stats['status'].record_success(duration)

    def status_failed(self, error: Exception, duration: float = 0) -> None:
        """Count a failed status scrape and zero the server gauges.

        The last good ServerStatus is kept for inspection.
        """
        with self.lock:
            self._status_scrape_errors.inc()
            for gauge in self._status_gauges.values():
                gauge.set(0)
            self.stats['status'].record_failure(str(error), duration)

    def update_sessions(self, sessions: Iterable[SessionRecord], duration: float = 0) -> None:
        """Replace the session collection and all per-session series."""
        sessions = tuple(sessions)
        with self.lock:
            self._sessions = sessions
            self._clear_session_gauges()
            for record in sessions:
                label_values = record.label_values()
                for attr, gauge in self._session_gauges.items():
                    gauge.labels(*label_values).set(getattr(record, attr))
            self.stats['users'].record_success(duration)

    def sessions_failed(self, error: Exception, duration: float = 0) -> None:
        """Count a failed session scrape and drop every per-session series."""
        with self.lock:
            self._users_scrape_errors.inc()
            self._clear_session_gauges()
            self.stats['users'].record_failure(str(error), duration)

    def _clear_session_gauges(self) -> None:
        for gauge in self._session_gauges.values():
            gauge.clear()

    @contextmanager
    def read(self) -> Iterator[Snapshot]:
        """Hold the lock and yield the current snapshot."""
        with self.lock:
            yield Snapshot(status=self._status, sessions=self._sessions)

    @property
    def snapshot(self) -> Snapshot:
        with self.read() as snapshot:
            return snapshot

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Refresh Loop
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class LoopState(Enum):
    """Refresh loop states."""
    IDLE = "idle"               # Waiting for the next tick
    REFRESHING = "refreshing"   # occtl calls in progress

class RefreshLoop:
    """Refreshes the snapshot store from occtl on a fixed interval.

    Scrape failures never leave this class: each one increments its
    category's error counter, resets that category's metrics and is logged.
    The next tick is the retry.
    """

    def __init__(
        self,
        client: OcctlClient,
        store: SnapshotStore,
        interval: float,
        logger: logging.Logger
    ):
        self.client = client
        self.store = store
        self.interval = interval
        self.logger = logger
        self.state = LoopState.IDLE
        self.cycles = 0
        self._last_started: Optional[float] = None

    async def refresh(self) -> None:
        """Run one refresh cycle: status first, then sessions."""
        self.state = LoopState.REFRESHING
        self._last_started = time.monotonic()
        try:
            await self._refresh_status()
            await self._refresh_sessions()
        finally:
            self.cycles += 1
            self.state = LoopState.IDLE

        self.logger.debug(
            f"Refresh cycle {self.cycles} completed in "
            f"{time.monotonic() - self._last_started:.2f}s"
        )

    async def _refresh_status(self) -> None:
        start_time = time.monotonic()
        try:
            status = await self.client.fetch_status()
        except OcctlError as e:
            self.logger.error(f"Failed to get server status: {e}")
            self.store.status_failed(e, time.monotonic() - start_time)
            return
        except Exception as e:
            self.logger.error(f"Unexpected error getting server status: {e}", exc_info=True)
            self.store.status_failed(e, time.monotonic() - start_time)
            return

        self.store.update_status(status, time.monotonic() - start_time)

    async def _refresh_sessions(self) -> None:
        start_time = time.monotonic()
        try:
            sessions = await self.client.fetch_sessions()
        except OcctlError as e:
            self.logger.error(f"Failed to get users details: {e}")
            self.store.sessions_failed(e, time.monotonic() - start_time)
            return
        except Exception as e:
            self.logger.error(f"Unexpected error getting users details: {e}", exc_info=True)
            self.store.sessions_failed(e, time.monotonic() - start_time)
            return

        self.store.update_sessions(sessions, time.monotonic() - start_time)
        self.logger.verbose(f"Exported {len(sessions)} sessions")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Refresh on every tick until shutdown_event is set.

        The eager first refresh is expected to have been done through
        refresh(); the first tick falls one interval after it.
        """
        while not shutdown_event.is_set():
            if self._last_started is None:
                sleep_time = 0.0
            else:
                elapsed = time.monotonic() - self._last_started
                sleep_time = max(0.0, self.interval - elapsed)
                if sleep_time == 0:
                    self.logger.warning(
                        f"Refresh took longer than interval "
                        f"({elapsed:.2f}s > {self.interval}s)"
                    )

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_time)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.refresh()
            except Exception as e:
                self.logger.error(f"Unexpected error in refresh cycle: {e}", exc_info=True)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics and Health Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsServer:
    """HTTP endpoint serving the snapshot store.

    Endpoints:
        GET /metrics: Prometheus exposition, rendered under the store lock
        GET /health: JSON scrape statistics, 503 past the failure threshold

    The lock is only held while a response is rendered, never while occtl
    runs, so reads are served from the last committed values.
    """

    def __init__(
        self,
        config: ProgramConfig,
        store: SnapshotStore,
        refresh_loop: RefreshLoop,
        logger: logging.Logger
    ):
        self.config = config
        self.store = store
        self.refresh_loop = refresh_loop
        self.logger = logger
        self._metrics_app = make_wsgi_app(store.registry)
        self._server = None
        self._thread = None

    @property
    def server_address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), available once started."""
        if not self._server:
            return None
        return self._server.server_address[:2]

    def start(self) -> bool:
        """Bind and start serving in a separate thread."""
        host, port = self.config.listen_address
        try:
            self._server = make_server(
                host, port, self.create_wsgi_app(),
                server_class=self._server_class(host, port),
                handler_class=self._handler_class()
            )
        except OSError as e:
            self.logger.error(f"Failed to bind metrics server on {host}:{port}: {e}")
            return False

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="MetricsServer",
            daemon=True
        )
        self._thread.start()
        bound_host, bound_port = self.server_address
        self.logger.info(f"Listening on http://{bound_host}:{bound_port}")
        return True

    def stop(self) -> None:
        """Stop the HTTP server."""
        if not self._server:
            return

        try:
            self.logger.info("Stopping metrics server")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("Metrics server thread failed to stop")
        finally:
            self._server = None
            self._thread = None

    @staticmethod
    def _server_class(host: str, port: int) -> type:
        """ThreadingWSGIServer bound to the address family of host."""
        infos = socket.getaddrinfo(
            host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )

        class _Server(ThreadingWSGIServer):
            address_family = infos[0][0]

        return _Server

    def _handler_class(self) -> type:
        """Request handler that sends access logs to our logger."""
        logger = self.logger

        class _Handler(WSGIRequestHandler):
            def log_message(self, format, *args):
                logger.verbose(f"{self.address_string()} - {format % args}")

        return _Handler

    def create_wsgi_app(self):
        """Create WSGI application for metrics and health checks."""
        def app(environ, start_response):
            path = environ.get('PATH_INFO', '').rstrip('/')

            if path == '/metrics':
                with self.store.lock:
                    return self._metrics_app(environ, start_response)

            if path == '/health':
                status, body = self._health_response()
                start_response(status, [
                    ('Content-Type', 'application/json'),
                    ('Cache-Control', 'no-cache, no-store, must-revalidate')
                ])
                return [body]

            start_response('404 Not Found', [('Content-Type', 'application/json')])
            return [self._create_error_response("error", "Not Found")]

        return app

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def _health_response(self) -> Tuple[str, bytes]:
        """Build the health status line and JSON body."""
        threshold = self.config.failure_threshold
        with self.store.read() as snapshot:
            scrapes = {name: stats.as_dict() for name, stats in self.store.stats.items()}
            is_healthy = all(
                stats.is_healthy(threshold) for stats in self.store.stats.values()
            )

        response = {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd,
                "refresh_state": self.refresh_loop.state.value,
                "refresh_cycles": self.refresh_loop.cycles
            },
            "scrapes": scrapes,
            "snapshot": {
                "status_available": snapshot.status is not None,
                "server_status": snapshot.status.status if snapshot.status else None,
                "sessions": len(snapshot.sessions) if snapshot.sessions is not None else None
            },
            "configuration": {
                "socket_path": self.config.socket_path,
                "interval_seconds": self.config.interval,
                "command_timeout_seconds": self.config.command_timeout,
                "failure_threshold": threshold,
                "config_file": str(self.config.loaded_from) if self.config.loaded_from else None
            }
        }

        status = '200 OK' if is_healthy else '503 Service Unavailable'
        return status, json.dumps(response, indent=2).encode()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the ocserv exporter.

    Wires the occtl client, snapshot store, refresh loop and HTTP server
    together and manages their lifecycle.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        store (SnapshotStore): Latest snapshot and metric registry
        client (OcctlClient): occtl client
        refresh_loop (RefreshLoop): Background refresh loop
        server (MetricsServer): HTTP endpoint
        shutdown_event (asyncio.Event): Set on SIGTERM/SIGINT
    """

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        transport: Optional[CommandTransport] = None
    ):
        """Initialize the exporter.

        Args:
            config: Loaded program configuration
            logger: Configured logger instance
            transport: Command transport, occtl when not given
        """
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        if transport is None:
            transport = OcctlTransport(
                config.occtl_path,
                config.socket_path,
                config.command_timeout,
                logger
            )
        self.transport = transport
        self.store = SnapshotStore()
        self.client = OcctlClient(transport, logger)
        self.refresh_loop = RefreshLoop(self.client, self.store, config.interval, logger)
        self.server = MetricsServer(config, self.store, self.refresh_loop, logger)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def check_occtl(self) -> bool:
        """Check that the occtl binary can be found."""
        if not isinstance(self.transport, OcctlTransport):
            return True

        resolved = shutil.which(self.config.occtl_path)
        if resolved is None:
            self.logger.error(f"occtl not found: {self.config.occtl_path}")
            return False

        self.logger.info(f"Using {resolved} with socket {self.config.socket_path}")
        return True

    def _notify(self, notification: Notification) -> None:
        if self.config.running_under_systemd:
            notify(notification)

    async def run(self) -> int:
        """Main service loop."""
        self._loop = asyncio.get_running_loop()
        previous_handlers = {
            signum: signal.signal(signum, self._handle_signal)
            for signum in (signal.SIGTERM, signal.SIGINT)
        }

        try:
            if not self.check_occtl():
                self._notify(Notification.STOPPING)
                return 1

            # Eager first refresh so the endpoint never starts out empty
            await self.refresh_loop.refresh()

            if not self.server.start():
                self._notify(Notification.STOPPING)
                return 1

            self._notify(Notification.READY)

            try:
                await self.refresh_loop.run(self.shutdown_event)
                self.logger.info("Shutdown event received, stopping service")
                return 0
            except asyncio.CancelledError:
                self.logger.warning("Service operation cancelled")
                raise
            finally:
                self.server.stop()
                self._notify(Notification.STOPPING)
                self.logger.info("Service shutdown complete")
        finally:
            for signum, handler in previous_handlers.items():
                if handler is not None:
                    signal.signal(signum, handler)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main() -> int:
    """Entry point for the exporter service."""
    try:
        source = ProgramSource()
        config = ProgramConfig(source)
        config.load()
    except ConfigurationError as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    program_logger = ProgramLogger(source, config)
    logger = program_logger.logger
    if config.loaded_from:
        logger.info(f"Loaded configuration from {config.loaded_from}")
    else:
        logger.info(f"No configuration at {source.config_path}, using defaults")

    try:
        exporter = MetricsExporter(config, logger)
        return await exporter.run()
    except Exception as e:
        logger.exception(f"Fatal error in service: {e}")
        return 1
    finally:
        program_logger.close()

def cli() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    cli()
