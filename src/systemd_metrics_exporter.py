#!/usr/bin/env python3 -u

"""
Systemd Metrics Exporter

Description:
---------------------

A metrics collection and exposition service that runs periodic checks
against the systemd service manager:
- Check registry keyed by check type name
- systemd check counting units in the "active" state
- Per-check metric senders published through prometheus_client
- Dynamic reloading of the checks section of the configuration
- Error handling and health checks

Usage:
---------------------
1. Create a YAML configuration file beside the script (or pass its path
   as the first argument)
2. Run the script directly or via a systemd service
3. Monitor metrics at http://localhost:9101/metrics
4. Check service health at http://localhost:9102/health

Configuration:
---------------------

exporter:
    metrics_port: 9101  # Prometheus metrics port (requires restart to change)
    health_port: 9102   # Health check port (requires restart to change)
    collection:
        poll_interval_sec: 5       # How often due checks are looked for
        failure_threshold: 20      # Failed ticks in a row before unhealthy
        command_timeout_sec: 30    # Timeout for systemctl calls
    logging:
        level: "INFO"
        file_level: "DEBUG"
        console_level: "INFO"
        journal_level: "WARNING"
        max_bytes: 10485760
        backup_count: 3
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

# Note: All exporter section changes require service restart

checks:
    systemd:
        init_config: {}
        instances:
            - unit_names:               # Optional literal unit names
                - sshd.service
              unit_regex:               # Optional unit name patterns
                - "docker.*"
              min_collection_interval: 15

Emitted Metrics:
---------------------
systemd.unit.active.count  (systemd_unit_active_count) Units in "active" state
systemd.unit.cpu           (systemd_unit_cpu)          Placeholder, always 1

Dependencies:
---------------------
- Python 3.9+
- prometheus_client
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- unit_names and unit_regex are parsed and validated but do not yet
  restrict which units are counted
- Invalid unit_regex patterns are skipped with an error log
- Exporter section changes require service restart
- Checks section supports live reloading
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import signal
import socket
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union
)
from wsgiref.simple_server import make_server

# Third party imports
from prometheus_client import (
    REGISTRY, CollectorRegistry, Gauge, start_http_server
)
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CheckError(Exception):
    """Base class for check-related errors."""
    pass

class ConfigError(CheckError):
    """Check configuration could not be applied."""
    pass

class InvalidInitConfigError(ConfigError):
    """The init_config document could not be decoded."""
    pass

class InvalidInstanceConfigError(ConfigError):
    """The instance document could not be decoded."""
    pass

class CollectionError(CheckError):
    """A single collection cycle failed."""
    pass

class SenderUnavailableError(CollectionError):
    """No metrics sender could be obtained for the check."""
    pass

class ConnectionFailedError(CollectionError):
    """The service manager connection could not be opened."""
    pass

class ListUnitsError(CollectionError):
    """Listing units over an open connection failed."""
    pass

class ServiceManagerError(CheckError):
    """Error talking to the service manager."""
    pass

class UnknownCheckError(KeyError):
    """No factory registered under the requested check name."""
    pass

class ProgramConfigurationError(Exception):
    """Error in the program configuration file."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())
    config_file: Optional[Path] = None

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        """Logger name derived from script name."""
        return self.base_name

    @property
    def config_path(self) -> Path:
        """Full path to config file."""
        path = self.config_file or self.script_dir / f"{self.base_name}.yml"
        if path.is_file() and os.access(path, os.R_OK):
            return path

        raise FileNotFoundError(
            f"Config file {path} not found"
        )

    @property
    def log_path(self) -> Path:
        """Full path to log file."""
        path = self.script_dir / f"{self.base_name}.log"

        if os.access(path, os.W_OK):
            return path
        if not path.exists() and os.access(path.parent, os.W_OK):
            return path

        raise PermissionError(
            f"No writable log file at {path}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with defaults and validation."""

    DEFAULT_METRICS_PORT = 9101
    DEFAULT_HEALTH_PORT = 9102
    DEFAULT_POLL_INTERVAL = 5
    DEFAULT_FAILURE_THRESHOLD = 20
    DEFAULT_COMMAND_TIMEOUT = 30

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager."""
        self._source = source
        self._config = {'exporter': self._get_exporter_defaults(), 'checks': {}}
        self._initial_exporter = {}
        self._config_path = source.config_path
        self._last_load_time = self._config_path.stat().st_mtime
        self._lock = threading.RLock()
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.on_config_reload: Optional[Callable[[], None]] = None
        self.logger: Optional[logging.Logger] = None

        self._validation_stats = {
            'checks': {'valid': 0, 'invalid': 0},
            'instances': {'valid': 0, 'invalid': 0}
        }

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def initialize(self) -> None:
        """Complete initialization after logger is attached."""
        try:
            self.load(initial_load=True)
        except Exception as e:
            self._log_message('error', f"Failed to load initial configuration: {e}")
            raise

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'health_port': self.DEFAULT_HEALTH_PORT,
            'collection': {
                'poll_interval_sec': self.DEFAULT_POLL_INTERVAL,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD,
                'command_timeout_sec': self.DEFAULT_COMMAND_TIMEOUT
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def _reset_validation_stats(self):
        """Reset validation statistics."""
        for section in self._validation_stats.values():
            section['valid'] = 0
            section['invalid'] = 0

    def load(self, initial_load: bool = False) -> None:
        """Load configuration, keeping the exporter section from the first load."""
        with self._lock:
            try:
                self._reset_validation_stats()

                new_config = {
                    'exporter': self._get_exporter_defaults(),
                    'checks': {}
                }

                try:
                    with open(self._config_path) as f:
                        file_config = yaml.safe_load(f) or {}
                except Exception as e:
                    raise ProgramConfigurationError(f"Failed to load config file: {e}")

                if not isinstance(file_config, dict):
                    raise ProgramConfigurationError("Configuration file must contain a mapping")

                if initial_load:
                    if file_config.get('exporter'):
                        self._validate_exporter_section(file_config['exporter'])
                        new_config['exporter'] = self._merge_with_defaults(
                            new_config['exporter'],
                            file_config['exporter']
                        )
                    self._initial_exporter = deepcopy(new_config['exporter'])
                else:
                    new_config['exporter'] = deepcopy(self._initial_exporter)

                if 'checks' not in file_config:
                    raise ProgramConfigurationError("Missing required 'checks' section")

                new_config['checks'] = self._validate_checks(file_config['checks'])

                old_config = self._config
                self._config = new_config
                self._last_load_time = self._config_path.stat().st_mtime

                self._log_validation_summary(initial_load)

                if not initial_load and old_config.get('checks') != new_config['checks']:
                    if self.on_config_reload:
                        self._log_message('info', "Checks configuration changed, triggering reload callback")
                        self.on_config_reload()

            except Exception as e:
                if initial_load:
                    raise ProgramConfigurationError(f"Failed to load initial config: {e}")
                self._log_message('error', f"Failed to reload configuration: {e}")

    def register_reload_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback to be called when the checks section changes."""
        self.on_config_reload = callback

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
        """Basic validation of exporter configuration."""
        if not isinstance(config, dict):
            raise ProgramConfigurationError("Exporter section must be a dictionary")

        metrics_port = config.get('metrics_port', self.DEFAULT_METRICS_PORT)
        health_port = config.get('health_port', self.DEFAULT_HEALTH_PORT)

        for name, port in (('metrics_port', metrics_port), ('health_port', health_port)):
            if not isinstance(port, int) or isinstance(port, bool) or port < 1 or port > 65535:
                raise ProgramConfigurationError(f"Invalid {name} {port}")

        if metrics_port == health_port:
            raise ProgramConfigurationError("metrics_port and health_port must be different")

    def _validate_checks(self, checks_config: Any) -> Dict[str, Any]:
        """Validate checks section with optimistic parsing."""
        if not isinstance(checks_config, dict):
            raise ProgramConfigurationError("Checks section must be a dictionary")

        validated_checks = {}

        for check_name, check_config in checks_config.items():
            try:
                validated_checks[check_name] = self._validate_check(check_name, check_config)
                self._validation_stats['checks']['valid'] += 1
            except ProgramConfigurationError as e:
                self._validation_stats['checks']['invalid'] += 1
                self._log_message(
                    'warning',
                    f"Failed to validate check '{check_name}': {e}. "
                    "Skipping this check but continuing with others."
                )

        if not validated_checks:
            raise ProgramConfigurationError("No valid checks found in configuration")

        return validated_checks

    def _validate_check(self, check_name: str, check_config: Any) -> Dict[str, Any]:
        """Validate the init_config/instances pair of a single check."""
        if not isinstance(check_config, dict):
            raise ProgramConfigurationError(
                f"Check '{check_name}' configuration must be a dictionary"
            )

        init_config = check_config.get('init_config')
        if init_config is not None and not isinstance(init_config, dict):
            raise ProgramConfigurationError("init_config must be a dictionary")

        instances = check_config.get('instances')
        if not isinstance(instances, list) or not instances:
            raise ProgramConfigurationError("instances must be a non-empty list")

        validated_instances = []
        for index, instance in enumerate(instances):
            if isinstance(instance, dict):
                validated_instances.append(instance)
                self._validation_stats['instances']['valid'] += 1
            else:
                self._validation_stats['instances']['invalid'] += 1
                self._log_message(
                    'warning',
                    f"Instance {index} of check '{check_name}' must be a dictionary, skipping"
                )

        if not validated_instances:
            raise ProgramConfigurationError(f"No valid instances in check '{check_name}'")

        return {
            'init_config': init_config or {},
            'instances': validated_instances
        }

    def _log_validation_summary(self, initial_load: bool) -> None:
        """Log validation statistics summary."""
        if not self.logger:
            return

        stats = self._validation_stats
        total_checks = stats['checks']['valid'] + stats['checks']['invalid']
        total_instances = stats['instances']['valid'] + stats['instances']['invalid']

        if initial_load:
            self.logger.info(
                f"Initial configuration loaded with "
                f"{stats['checks']['valid']}/{total_checks} checks, "
                f"{stats['instances']['valid']}/{total_instances} instances valid"
            )
        elif stats['checks']['invalid'] > 0 or stats['instances']['invalid'] > 0:
            self.logger.warning(
                f"Configuration reloaded with validation issues: "
                f"{stats['checks']['invalid']} invalid checks, "
                f"{stats['instances']['invalid']} invalid instances"
            )
        else:
            self.logger.info(
                f"Configuration reloaded successfully with "
                f"{stats['checks']['valid']} checks, "
                f"{stats['instances']['valid']} instances"
            )

    def check_reload(self) -> None:
        """Check if config file has been modified and reload if needed."""
        try:
            current_mtime = self._config_path.stat().st_mtime
            if current_mtime > self._last_load_time:
                self.load()
        except Exception as e:
            self._log_message('error', f"Failed to check configuration reload: {e}")

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def start_time(self) -> datetime:
        return self._start_time

    @property
    def source(self) -> ProgramSource:
        return self._source

    @property
    def config_path(self) -> Path:
        """Config file path resolved at startup."""
        return self._config_path

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def checks(self) -> Dict[str, Any]:
        """Get checks configuration, reloading it first if the file changed."""
        self.check_reload()
        return self._config['checks']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def collection(self) -> Dict[str, Any]:
        """Get collection configuration."""
        return self.exporter.get('collection', {})

    @property
    def metrics_port(self) -> int:
        return self.exporter.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def health_port(self) -> int:
        return self.exporter.get('health_port', self.DEFAULT_HEALTH_PORT)

    @property
    def poll_interval(self) -> float:
        return self.collection.get('poll_interval_sec', self.DEFAULT_POLL_INTERVAL)

    @property
    def failure_threshold(self) -> int:
        return self.collection.get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

    @property
    def command_timeout(self) -> float:
        return self.collection.get('command_timeout_sec', self.DEFAULT_COMMAND_TIMEOUT)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """
        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration merged over the ProgramConfig defaults."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    # handler name -> logging settings key holding its level
    _LEVEL_KEYS = {
        'console': 'console_level',
        'file': 'file_level',
        'journal': 'journal_level',
    }

    def _handler_factories(self, settings: Dict[str, Any]) -> List[Tuple[str, Callable[[], logging.Handler]]]:
        factories = [
            ('console', lambda: logging.StreamHandler(sys.stdout)),
            ('file', lambda: RotatingFileHandler(
                self.source.log_path,
                maxBytes=settings['max_bytes'],
                backupCount=settings['backup_count']
            )),
        ]
        if self.config.running_under_systemd:
            factories.append(('journal', journal.JournaldLogHandler))
        return factories

    def _apply_settings(self, settings: Dict[str, Any]) -> None:
        """Push level and format settings onto the logger and its handlers."""
        formatter = logging.Formatter(settings['format'], settings['date_format'])
        self._logger.setLevel(settings['level'])
        for name, handler in self._handlers.items():
            handler.setFormatter(formatter)
            handler.setLevel(settings[self._LEVEL_KEYS[name]])

    def _setup_logging(self) -> logging.Logger:
        """Attach console, rotating file and (under systemd) journal handlers.

        A handler that cannot be created is reported on stderr and the rest
        are still attached. With no handler at all, a plain stdout handler
        is used.
        """
        self._logger = logging.getLogger(self.source.logger_name)
        self._logger.handlers.clear()
        settings = self._get_logging_config()

        for name, factory in self._handler_factories(settings):
            try:
                handler = factory()
            except Exception as e:
                print(f"Failed to set up {name} log handler: {e}", file=sys.stderr)
                continue
            self._logger.addHandler(handler)
            self._handlers[name] = handler

        if not self._handlers:
            self._handlers['console'] = logging.StreamHandler(sys.stdout)
            self._logger.addHandler(self._handlers['console'])

        self._apply_settings(settings)
        return self._logger

    def update_config(self) -> None:
        """Re-apply levels and format once the configuration file is loaded."""
        self._apply_settings(self._get_logging_config())

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metric Senders
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

_INVALID_METRIC_CHARS = re.compile(r'[^a-zA-Z0-9_:]')
_INVALID_LABEL_CHARS = re.compile(r'[^a-zA-Z0-9_]')

@dataclass(frozen=True)
class MetricSample:
    """A buffered gauge sample waiting for commit."""
    name: str
    value: float
    hostname: str = ''
    tags: Tuple[str, ...] = ()

    @property
    def prometheus_name(self) -> str:
        """Get prometheus-compatible metric name."""
        return _INVALID_METRIC_CHARS.sub('_', self.name)

    def get_label_dict(self, check_id: str) -> Dict[str, str]:
        """Get labels for Prometheus; `key:value` tags become key=value."""
        labels = {'check_id': check_id}
        if self.hostname:
            labels['host'] = self.hostname
        for tag in self.tags:
            key, _, value = tag.partition(':')
            labels[_INVALID_LABEL_CHARS.sub('_', key)] = value
        return labels

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class Sender:
    """Buffers samples for one check and publishes them on commit."""

    def __init__(self, check_id: str, manager: 'SenderManager'):
        self.check_id = check_id
        self._manager = manager
        self._pending: List[MetricSample] = []

    def gauge(
        self,
        name: str,
        value: float,
        hostname: str = '',
        tags: Optional[List[str]] = None
    ) -> None:
        """Buffer a gauge sample until the next commit."""
        self._pending.append(
            MetricSample(name, float(value), hostname, tuple(tags or ()))
        )

    def commit(self) -> None:
        """Publish all buffered samples and clear the buffer."""
        pending, self._pending = self._pending, []
        self._manager.publish(self.check_id, pending)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SenderManager:
    """Hands out per-check senders backed by prometheus_client gauges."""

    def __init__(
        self,
        logger: logging.Logger,
        registry: CollectorRegistry = REGISTRY
    ):
        self.logger = logger
        self.registry = registry
        self._senders: Dict[str, Sender] = {}
        self._gauges: Dict[str, Gauge] = {}
        # check_id -> {(prometheus name, label values in label name order)}
        self._published: Dict[str, Set[Tuple[str, Tuple[str, ...]]]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def get_sender(self, check_id: str) -> Sender:
        """Get the sender for a check, creating it on first use.

        Raises:
            SenderUnavailableError: If the manager has been closed
        """
        with self._lock:
            if self._closed:
                raise SenderUnavailableError(
                    f"Sender manager is closed, no sender for {check_id}"
                )
            sender = self._senders.get(check_id)
            if sender is None:
                sender = Sender(check_id, self)
                self._senders[check_id] = sender
            return sender

    def destroy_sender(self, check_id: str) -> None:
        """Forget the sender of a removed check and drop its exported series."""
        with self._lock:
            self._senders.pop(check_id, None)
            for name, label_values in self._published.pop(check_id, set()):
                gauge = self._gauges.get(name)
                if gauge is None:
                    continue
                try:
                    gauge.remove(*label_values)
                except KeyError:
                    self.logger.debug(f"Series {name}{list(label_values)} of {check_id} already gone")
                    continue
                self.logger.debug(f"Removed series {name}{list(label_values)} of {check_id}")

    def close(self) -> None:
        """Stop handing out senders."""
        with self._lock:
            self._closed = True
            self._senders.clear()

    def _get_gauge(self, sample: MetricSample, label_names: List[str]) -> Gauge:
        """Get or create the Prometheus gauge for a sample."""
        gauge = self._gauges.get(sample.prometheus_name)
        if gauge is None:
            self.logger.debug(
                f"Creating gauge {sample.prometheus_name} with labels {label_names}"
            )
            gauge = Gauge(
                sample.prometheus_name,
                f"Check metric {sample.name}",
                labelnames=label_names,
                registry=self.registry
            )
            self._gauges[sample.prometheus_name] = gauge
        return gauge

    def publish(self, check_id: str, samples: List[MetricSample]) -> None:
        """Set Prometheus gauges from committed samples."""
        with self._lock:
            for sample in samples:
                try:
                    labels = sample.get_label_dict(check_id)
                    label_names = sorted(labels)
                    gauge = self._get_gauge(sample, label_names)
                    gauge.labels(**labels).set(sample.value)
                    self._published.setdefault(check_id, set()).add(
                        (sample.prometheus_name, tuple(labels[k] for k in label_names))
                    )
                except Exception as e:
                    self.logger.error(
                        f"Failed to update metric {sample.prometheus_name}: {e}",
                        exc_info=True
                    )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Service Manager Connection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Glyphs systemctl may print in front of a unit name (failed, inactive, ...)
_STATUS_SYMBOLS = {"●", "○", "↻", "×", "x", "*"}

@dataclass(frozen=True)
class UnitStatus:
    """Status of one unit as reported by the service manager."""
    name: str
    load_state: str
    active_state: str
    sub_state: str
    description: str = ''

    @classmethod
    def from_list_units_line(cls, line: str) -> Optional['UnitStatus']:
        """Parse one line of `systemctl list-units --plain --no-legend`."""
        stripped = line.strip()
        if not stripped:
            return None

        first, _, rest = stripped.partition(' ')
        if first in _STATUS_SYMBOLS:
            stripped = rest.strip()

        parts = stripped.split(None, 4)
        if len(parts) < 4:
            return None

        return cls(
            name=parts[0],
            load_state=parts[1],
            active_state=parts[2],
            sub_state=parts[3],
            description=parts[4] if len(parts) > 4 else ''
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SystemctlConnection:
    """A per-cycle handle to the service manager."""

    LIST_UNITS_ARGS = (
        'list-units', '--all', '--plain', '--full', '--no-legend', '--no-pager'
    )

    def __init__(self, provider: 'SystemctlConnectionProvider', version: str):
        self._provider = provider
        self.version = version
        self.closed = False

    def list_units(self) -> List[UnitStatus]:
        """List every loaded unit with its load, active and sub state."""
        if self.closed:
            raise ServiceManagerError("Connection is closed")

        output = self._provider.execute(*self.LIST_UNITS_ARGS)
        units = []
        for line in output.splitlines():
            unit = UnitStatus.from_list_units_line(line)
            if unit is None:
                if line.strip():
                    self._provider.logger.debug(f"Skipping unparsable unit line: {line!r}")
                continue
            units.append(unit)
        return units

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SystemctlConnectionProvider:
    """Opens service manager connections through the systemctl binary."""

    def __init__(
        self,
        logger: logging.Logger,
        systemctl: str = 'systemctl',
        timeout: float = ProgramConfig.DEFAULT_COMMAND_TIMEOUT,
        user: bool = False
    ):
        self.logger = logger
        self.systemctl = systemctl
        self.timeout = timeout
        self.user = user

    def _command(self, *args: str) -> List[str]:
        command = [self.systemctl]
        if self.user:
            command.append('--user')
        command.extend(args)
        return command

    def execute(self, *args: str) -> str:
        """Run systemctl and return its stdout.

        Raises:
            ServiceManagerError: On a missing binary, timeout or non-zero exit
        """
        command = self._command(*args)
        self.logger.debug(f"Executing command: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise ServiceManagerError(
                f"'{' '.join(command)}' timed out after {self.timeout}s"
            )
        except OSError as e:
            raise ServiceManagerError(f"Failed to execute '{' '.join(command)}': {e}")

        if result.returncode != 0:
            raise ServiceManagerError(
                f"'{' '.join(command)}' exited with {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        return result.stdout

    def open(self) -> SystemctlConnection:
        """Check that the service manager answers and return a connection."""
        if shutil.which(self.systemctl) is None:
            raise ServiceManagerError(f"{self.systemctl} not found")

        output = self.execute('show', '--property=Version')
        version = output.strip().partition('=')[2]
        return SystemctlConnection(self, version)

    def close(self, connection: SystemctlConnection) -> None:
        connection.closed = True

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Check Registry
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

CheckFactory = Callable[..., 'CheckBase']

_check_factories: Dict[str, CheckFactory] = {}

def register_check(name: str, factory: CheckFactory) -> None:
    """Register a check factory under its check type name."""
    if name in _check_factories:
        logging.getLogger(__name__).warning(f"Overwriting check factory: {name}")
    _check_factories[name] = factory

def get_check_factory(name: str) -> CheckFactory:
    """Get the factory registered under a check type name."""
    try:
        return _check_factories[name]
    except KeyError:
        raise UnknownCheckError(name) from None

def registered_checks() -> List[str]:
    return sorted(_check_factories)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Checks
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

RawDocument = Union[str, bytes, Mapping[str, Any], None]

def decode_document(raw: RawDocument) -> Dict[str, Any]:
    """Decode a raw YAML document (or pre-parsed mapping) into a dict.

    Raises:
        ValueError, yaml.YAMLError: If the document is not a mapping
    """
    if raw is None:
        return {}
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8')
    if isinstance(raw, str):
        document = yaml.safe_load(raw) if raw.strip() else None
    elif isinstance(raw, Mapping):
        document = dict(raw)
    else:
        raise ValueError(f"Unsupported document type {type(raw).__name__}")

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValueError(f"Document must be a mapping, got {type(document).__name__}")
    return document

def _document_bytes(raw: RawDocument) -> bytes:
    if raw is None:
        return b''
    if isinstance(raw, bytes):
        return raw
    if isinstance(raw, str):
        return raw.encode('utf-8')
    return yaml.safe_dump(dict(raw), sort_keys=True).encode('utf-8')

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CheckBase(ABC):
    """Common state shared by every check instance.

    Attributes:
        name (str): Check type name the factory is registered under
        interval (float): Seconds between runs, from min_collection_interval
        logger (logging.Logger): Logger passed in by the host
    """

    DEFAULT_MIN_COLLECTION_INTERVAL = 15

    def __init__(self, name: str, logger: logging.Logger):
        self.name = name
        self.logger = logger
        self.interval: float = self.DEFAULT_MIN_COLLECTION_INTERVAL
        self._check_id = name
        # Serializes configure() and run() on this instance
        self._lock = threading.Lock()

    @property
    def check_id(self) -> str:
        return self._check_id

    def build_check_id(self, raw_instance: RawDocument, raw_init_config: RawDocument) -> str:
        """Derive a stable ID from the check name and both raw documents."""
        digest = hashlib.sha256()
        digest.update(_document_bytes(raw_instance))
        digest.update(b'\n')
        digest.update(_document_bytes(raw_init_config))
        return f"{self.name}:{digest.hexdigest()[:16]}"

    def common_configure(self, instance: Dict[str, Any]) -> float:
        """Read options every check instance accepts."""
        interval = instance.get('min_collection_interval')
        if interval is None:
            return self.DEFAULT_MIN_COLLECTION_INTERVAL
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise InvalidInstanceConfigError(
                f"min_collection_interval must be a positive number, got {interval!r}"
            )
        return float(interval)

    @abstractmethod
    def configure(self, raw_instance: RawDocument, raw_init_config: RawDocument) -> None:
        """Apply one instance document and the shared init document.

        Raises ConfigError (or a subclass) and keeps the previous
        configuration when a document cannot be applied.
        """

    @abstractmethod
    def run(self) -> None:
        """Collect once and commit the results through the check's sender.

        Raises CollectionError (or a subclass) when the cycle fails.
        """

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

SYSTEMD_CHECK_NAME = 'systemd'

ACTIVE_UNIT_COUNT_METRIC = 'systemd.unit.active.count'
# Constant placeholder, not a CPU measurement
UNIT_CPU_METRIC = 'systemd.unit.cpu'

@dataclass(frozen=True)
class SystemdInstanceConfig:
    """Instance options of the systemd check."""
    unit_names: Tuple[str, ...] = ()
    unit_regex_strings: Tuple[str, ...] = ()
    unit_regex_patterns: Tuple['re.Pattern[str]', ...] = ()

@dataclass(frozen=True)
class SystemdInitConfig:
    """Init options of the systemd check (none yet)."""
    pass

@dataclass(frozen=True)
class SystemdConfig:
    instance: SystemdInstanceConfig = field(default_factory=SystemdInstanceConfig)
    init_config: SystemdInitConfig = field(default_factory=SystemdInitConfig)

def _string_list(instance: Dict[str, Any], key: str) -> Tuple[str, ...]:
    """Read an optional list of strings from an instance document."""
    value = instance.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise InvalidInstanceConfigError(
            f"{key} must be a list of strings, got {type(value).__name__}"
        )
    for item in value:
        if not isinstance(item, str):
            raise InvalidInstanceConfigError(
                f"{key} must be a list of strings, got item {item!r}"
            )
    return tuple(value)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SystemdCheck(CheckBase):
    """Counts systemd units in the "active" state.

    Each run opens a fresh service manager connection, lists every loaded
    unit, and reports the active count as a gauge. The connection is closed
    exactly once whenever it was opened, whatever happens afterwards.

    The unit_names/unit_regex options are validated and stored but do not
    yet restrict which units are counted.
    """

    def __init__(
        self,
        logger: logging.Logger,
        sender_manager: SenderManager,
        connection_provider: SystemctlConnectionProvider
    ):
        super().__init__(SYSTEMD_CHECK_NAME, logger)
        self.sender_manager = sender_manager
        self.connection_provider = connection_provider
        self.config = SystemdConfig()

    def configure(self, raw_instance: RawDocument, raw_init_config: RawDocument) -> None:
        """Parse both documents and replace the current configuration.

        Raises:
            InvalidInitConfigError: If the init document can't be decoded
            InvalidInstanceConfigError: If the instance document can't be decoded
        """
        try:
            decode_document(raw_init_config)
        except (yaml.YAMLError, ValueError) as e:
            raise InvalidInitConfigError(f"Invalid init_config: {e}") from e

        try:
            instance = decode_document(raw_instance)
        except (yaml.YAMLError, ValueError) as e:
            raise InvalidInstanceConfigError(f"Invalid instance: {e}") from e

        interval = self.common_configure(instance)
        unit_names = _string_list(instance, 'unit_names')
        unit_regex_strings = _string_list(instance, 'unit_regex')

        self.logger.debug(f"systemd check unit_names: {list(unit_names)}")
        self.logger.debug(f"systemd check unit_regex: {list(unit_regex_strings)}")

        patterns = []
        for regex_string in unit_regex_strings:
            try:
                patterns.append(re.compile(regex_string))
            except re.error as e:
                self.logger.error(
                    f"Failed to parse systemd check option unit_regex {regex_string!r}: {e}"
                )

        config = SystemdConfig(
            instance=SystemdInstanceConfig(
                unit_names=unit_names,
                unit_regex_strings=unit_regex_strings,
                unit_regex_patterns=tuple(patterns)
            ),
            init_config=SystemdInitConfig()
        )
        check_id = self.build_check_id(raw_instance, raw_init_config)

        with self._lock:
            self.config = config
            self.interval = interval
            self._check_id = check_id

    @contextmanager
    def _scoped_connection(self, connection: Any) -> Iterator[Any]:
        """Close the connection on every exit path."""
        try:
            yield connection
        finally:
            try:
                self.connection_provider.close(connection)
            except Exception as e:
                self.logger.error(f"Failed to close service manager connection: {e}")

    def run(self) -> None:
        """Run one collection cycle.

        Raises:
            SenderUnavailableError: If no sender is available
            ConnectionFailedError: If the connection can't be opened
            ListUnitsError: If listing units fails
        """
        with self._lock:
            self._run()

    def _run(self) -> None:
        try:
            sender = self.sender_manager.get_sender(self.check_id)
        except SenderUnavailableError:
            raise
        except Exception as e:
            raise SenderUnavailableError(f"No sender for {self.check_id}: {e}") from e

        try:
            connection = self.connection_provider.open()
        except Exception as e:
            self.logger.error(f"New connection error: {e}")
            raise ConnectionFailedError(f"Failed to connect to service manager: {e}") from e

        with self._scoped_connection(connection) as conn:
            try:
                units = conn.list_units()
            except Exception as e:
                self.logger.error(f"ListUnits error: {e}")
                raise ListUnitsError(f"Failed to list units: {e}") from e

            active_units = 0
            for unit in units:
                self.logger.debug(
                    f"[unit] {unit.name}: ActiveState={unit.active_state}, SubState={unit.sub_state}"
                )
                if unit.active_state == 'active':
                    active_units += 1

            sender.gauge(ACTIVE_UNIT_COUNT_METRIC, float(active_units))
            sender.gauge(UNIT_CPU_METRIC, 1.0)
            sender.commit()

register_check(SYSTEMD_CHECK_NAME, SystemdCheck)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Collection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for collection ticks.

    Attributes:
        attempts (int): Ticks that ran at least one check
        successful (int): Successful check runs
        errors (int): Failed check runs
        consecutive_failures (int): Current streak of ticks where every run failed
        last_collection_time (float): Duration of last tick
        total_collection_time (float): Cumulative tick time
        last_collection_datetime (datetime): Timestamp of last tick
    """
    attempts: int = 0
    successful: int = 0
    errors: int = 0
    consecutive_failures: int = 0
    last_collection_time: float = 0
    total_collection_time: float = 0
    last_collection_datetime: datetime = field(
        default_factory=lambda: ProgramConfig.now_utc()
    )

    def update_collection_time(self, start_time: float):
        """Update collection timing statistics."""
        collection_time = ProgramConfig.now_utc().timestamp() - start_time
        self.last_collection_time = collection_time
        self.total_collection_time += collection_time
        self.last_collection_datetime = ProgramConfig.now_utc()

    def get_average_collection_time(self) -> float:
        """Calculate average collection time."""
        return self.total_collection_time / self.attempts if self.attempts > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Determine if collection statistics indicate healthy operation."""
        return self.consecutive_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ScheduledCheck:
    """A configured check instance and its run bookkeeping."""
    check: CheckBase
    last_run: Optional[float] = None
    last_run_datetime: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0

    def is_due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.check.interval

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check": self.check.name,
            "check_id": self.check.check_id,
            "interval_seconds": self.check.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_datetime_utc": (
                self.last_run_datetime.isoformat() if self.last_run_datetime else None
            ),
            "last_error": self.last_error
        }

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsCollector:
    """Builds check instances from configuration and runs them when due."""

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        sender_manager: SenderManager,
        connection_provider: SystemctlConnectionProvider,
        registry: CollectorRegistry = REGISTRY
    ):
        self.config = config
        self.logger = logger
        self.sender_manager = sender_manager
        self.connection_provider = connection_provider
        self.registry = registry
        self.stats = CollectionStats()
        self.scheduled: List[ScheduledCheck] = []

        # Register for config reload notifications
        self.config.register_reload_callback(self._reinitialize_checks)
        self._initialize_checks()
        self._setup_internal_metrics()

    def _initialize_checks(self):
        """Build and configure an instance for each configured check entry."""
        for check_name, check_config in self.config.checks.items():
            try:
                factory = get_check_factory(check_name)
            except UnknownCheckError:
                self.logger.error(
                    f"Unknown check '{check_name}', registered checks: {registered_checks()}"
                )
                continue

            init_config = check_config.get('init_config', {})
            for index, instance in enumerate(check_config.get('instances', [])):
                check = factory(
                    logger=self.logger,
                    sender_manager=self.sender_manager,
                    connection_provider=self.connection_provider
                )
                try:
                    check.configure(instance, init_config)
                except ConfigError as e:
                    self.logger.error(
                        f"Failed to configure instance {index} of check '{check_name}': {e}"
                    )
                    continue

                self.scheduled.append(ScheduledCheck(check))
                self.logger.info(
                    f"Scheduled check {check.check_id} every {check.interval}s"
                )

    def _setup_internal_metrics(self):
        """Set up internal metrics tracking."""
        self._internal_metrics = {
            'collection_successful': Gauge(
                'exporter_collection_successful_total',
                'Total number of successful check runs',
                registry=self.registry
            ),
            'collection_errors': Gauge(
                'exporter_collection_errors_total',
                'Total number of failed check runs',
                registry=self.registry
            ),
            'collection_duration': Gauge(
                'exporter_collection_duration_seconds',
                'Duration of the last collection tick in seconds',
                registry=self.registry
            ),
            'uptime': Gauge(
                'exporter_uptime_seconds',
                'Time since service start in seconds',
                registry=self.registry
            ),
            'last_collection_unix_seconds': Gauge(
                'exporter_last_collection_unix_seconds',
                'Unix timestamp of last collection tick with millisecond precision',
                registry=self.registry
            )
        }

    def _reinitialize_checks(self):
        """Rebuild check instances after config reload."""
        self.logger.info("Reinitializing checks due to configuration change")
        for scheduled in self.scheduled:
            self.sender_manager.destroy_sender(scheduled.check.check_id)
        self.scheduled.clear()
        self._initialize_checks()

    def _update_internal_metrics(self, duration: float):
        """Update internal metrics."""
        collection_time = round(self.config.now_utc().timestamp(), 3)

        self._internal_metrics['collection_successful'].set(self.stats.successful)
        self._internal_metrics['collection_errors'].set(self.stats.errors)
        self._internal_metrics['collection_duration'].set(duration)
        self._internal_metrics['uptime'].set(self.config.get_uptime_seconds())
        self._internal_metrics['last_collection_unix_seconds'].set(collection_time)

    def _run_check(self, scheduled: ScheduledCheck, now: float) -> bool:
        """Run one check instance, recording the outcome."""
        scheduled.last_run = now
        scheduled.last_run_datetime = self.config.now_utc()
        scheduled.runs += 1
        try:
            scheduled.check.run()
        except CheckError as e:
            scheduled.failures += 1
            scheduled.last_error = str(e)
            self.logger.error(f"Check {scheduled.check.check_id} failed: {e}")
            return False

        scheduled.last_error = None
        return True

    def collect_all_metrics(self) -> bool:
        """Run every check whose interval has elapsed.

        Returns:
            False if at least one check ran and all of them failed
        """
        # Rebuilds checks through the reload callback if the file changed
        self.config.check_reload()

        collection_start = self.config.now_utc().timestamp()
        due = [s for s in self.scheduled if s.is_due(collection_start)]
        self._internal_metrics['uptime'].set(self.config.get_uptime_seconds())

        if not due:
            return True

        self.stats.attempts += 1
        success_count = 0
        errors = 0

        for scheduled in due:
            if self._run_check(scheduled, collection_start):
                success_count += 1
            else:
                errors += 1

        self.stats.successful += success_count
        self.stats.errors += errors
        if success_count == 0:
            self.stats.consecutive_failures += 1
        else:
            self.stats.consecutive_failures = 0

        self.stats.update_collection_time(collection_start)
        self._update_internal_metrics(self.stats.last_collection_time)

        self.logger.info(
            f"Collection completed in {self.stats.last_collection_time:.2f}s: "
            f"{success_count} successful, {errors} errors"
        )
        return success_count > 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Health Check Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class HealthCheck:
    """Health check endpoint implementation.

    Endpoints:
        GET /health: Service health status with per-check results

    Response Format:
        {
            "service": {"status": "healthy|unhealthy", "up": true, ...},
            "stats": {"collection": {...}, "configuration": {...}},
            "checks": [{...}, ...]
        }
    """

    def __init__(
        self,
        config: ProgramConfig,
        metrics_collector: MetricsCollector,
        logger: logging.Logger
    ):
        self.config = config
        self.metrics_collector = metrics_collector
        self.logger = logger
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start health check server in a separate thread."""
        try:
            app = self.create_wsgi_app()
            self._server = make_server('', self.config.health_port, app)
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="HealthCheckServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started health check server on port {self.config.health_port}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start health check server: {e}")
            return False

    def stop(self) -> None:
        """Shut the server down and wait briefly for its thread."""
        server, thread = self._server, self._thread
        self._server = self._thread = None
        if server is None:
            return

        self.logger.info("Stopping health check server")
        try:
            server.shutdown()
            server.server_close()
        except Exception as e:
            self.logger.error(f"Error stopping health check server: {e}")
            return

        if thread is not None:
            thread.join(timeout=5)
            if thread.is_alive():
                self.logger.warning("Health check server thread failed to stop")

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def build_response(self) -> Tuple[bool, Dict[str, Any]]:
        """Build the health document and whether the service is healthy."""
        stats = self.metrics_collector.stats
        is_healthy = stats.is_healthy(self.config.failure_threshold)

        response = {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "last_metrics_collection_datetime_utc":
                    stats.last_collection_datetime.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "collection": {
                    "attempts": stats.attempts,
                    "successful": stats.successful,
                    "errors": stats.errors,
                    "consecutive_failures": stats.consecutive_failures,
                    "failure_threshold": self.config.failure_threshold,
                    "timing": {
                        "last_collection_seconds": round(stats.last_collection_time, 3),
                        "average_collection_seconds": round(
                            stats.get_average_collection_time(), 3
                        )
                    }
                },
                "configuration": {
                    "poll_interval_seconds": self.config.poll_interval,
                    "command_timeout_seconds": self.config.command_timeout,
                    "config_path": str(self.config.config_path)
                }
            },
            "checks": [s.to_dict() for s in list(self.metrics_collector.scheduled)]
        }
        return is_healthy, response

    def create_wsgi_app(self):
        """Create WSGI application for health checks."""
        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')

                if path not in ['', '/health']:
                    start_response('404 Not Found', [('Content-Type', 'application/json')])
                    return [self._create_error_response("error", "Not Found")]

                is_healthy, response = self.build_response()

                status = '200 OK' if is_healthy else '503 Service Unavailable'
                headers = [
                    ('Content-Type', 'application/json'),
                    ('Cache-Control', 'no-cache, no-store, must-revalidate')
                ]
                start_response(status, headers)
                return [json.dumps(response, indent=2).encode()]

            except Exception as e:
                self.logger.error(f"Health check error: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", str(e))]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the systemd metrics exporter.

    Manages the lifecycle of the service: server startup/shutdown, the
    collection loop and the health endpoint.

    Attributes:
        source (ProgramSource): Program source information
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        sender_manager (SenderManager): Per-check metric senders
        metrics_collector (MetricsCollector): Check scheduling and execution
        health_check (HealthCheck): Health check endpoint handler
    """

    SHUTDOWN_TIMEOUT = 30  # seconds

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        logger: logging.Logger,
        registry: CollectorRegistry = REGISTRY
    ):
        self.source = source
        self.config = config
        self.logger = logger
        self.registry = registry
        self.shutdown_event = asyncio.Event()
        self._servers_started = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.logger.info("Starting metrics exporter initialization")

        self.sender_manager = SenderManager(self.logger, registry)
        self.connection_provider = SystemctlConnectionProvider(
            self.logger,
            timeout=self.config.command_timeout
        )
        self.metrics_collector = MetricsCollector(
            self.config,
            self.logger,
            self.sender_manager,
            self.connection_provider,
            registry
        )
        self.health_check = HealthCheck(self.config, self.metrics_collector, self.logger)

        self.logger.info("Metrics exporter initialized")

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def check_ports(self) -> bool:
        """Check if required ports are available."""
        port_configs = [
            (self.config.metrics_port, "metrics"),
            (self.config.health_port, "health check")
        ]

        for port, name in port_configs:
            if not self._check_port_available(port, name):
                return False
        return True

    def _check_port_available(self, port: int, name: str) -> bool:
        """Check if a specific port is available."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('', port))
            return True
        except OSError as e:
            self.logger.error(f"{name.title()} port {port} is not available: {e}")
            return False
        finally:
            sock.close()

    def _start_servers(self) -> bool:
        """Start metrics and health check servers."""
        try:
            start_http_server(self.config.metrics_port, registry=self.registry)
            self.logger.info(f"Started metrics server on port {self.config.metrics_port}")
        except Exception as e:
            self.logger.error(f"Failed to start metrics server: {e}")
            return False

        if not self.health_check.start():
            self.logger.info("Stopping metrics server (via process termination)")
            return False

        self._servers_started = True
        return True

    def _cleanup(self):
        """Release servers and senders."""
        if not self._servers_started:
            return

        try:
            self.logger.info("Closing metric senders...")
            self.sender_manager.close()

            self.health_check.stop()

            # prometheus_client server will stop with process
            self.logger.info("Metrics server will stop with process termination")
        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")
        finally:
            self._servers_started = False

    def _notify(self, notification: Notification) -> None:
        if self.config.running_under_systemd:
            notify(notification)

    async def run(self) -> int:
        """Main service loop."""
        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        try:
            if not self.check_ports():
                self.logger.error("Required ports are not available")
                return 1

            if not self._start_servers():
                return 1

            self._notify(Notification.READY)

            while not self.shutdown_event.is_set():
                loop_start = self.config.now_utc().timestamp()
                try:
                    # Checks block on systemctl, keep them off the event loop
                    await self._loop.run_in_executor(
                        None, self.metrics_collector.collect_all_metrics
                    )
                except Exception as e:
                    self.logger.error(f"Error in main loop: {e}", exc_info=True)

                elapsed = self.config.now_utc().timestamp() - loop_start
                sleep_time = max(0, self.config.poll_interval - elapsed)
                if sleep_time == 0:
                    self.logger.warning(
                        f"Collection took longer than poll interval "
                        f"({elapsed:.2f}s > {self.config.poll_interval}s)"
                    )
                    continue
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=sleep_time)
                except asyncio.TimeoutError:
                    continue

            self.logger.info("Shutdown event received, stopping service")
            return 0

        except Exception as e:
            self.logger.exception(f"Fatal error in service: {e}")
            return 1

        finally:
            self._notify(Notification.STOPPING)
            self._cleanup()
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the metrics exporter service."""
    argv = sys.argv[1:] if argv is None else argv
    try:
        source = ProgramSource(config_file=Path(argv[0]).resolve() if argv else None)
        config = ProgramConfig(source)
        program_logger = ProgramLogger(source, config)
        logger = program_logger.logger
        config.initialize()
        program_logger.update_config()

        exporter = MetricsExporter(source, config, logger)
        return await exporter.run()

    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

def cli() -> None:
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    cli()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
