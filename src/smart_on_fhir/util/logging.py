from __future__ import annotations

import logging
import os
from typing import Mapping

LOG_ENV_VAR = "SMART_ON_FHIR_LOG"

LOG_DOMAINS = {
    "client": "smart.client",
    "token": "smart.token",
    "storage": "smart.storage",
    "cache": "smart.cache",
    "fhir": "smart.fhir",
}

LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def parse_log_level(value: str) -> int:
    level = LOG_LEVELS.get(value.lower())
    if level is None:
        allowed = ", ".join(sorted(LOG_LEVELS))
        raise ValueError(f"invalid log level '{value}' (expected one of: {allowed})")
    return level


def parse_log_specs(specs: list[str]) -> dict[str, int]:
    enabled: dict[str, int] = {}
    for spec in specs:
        domain, sep, level_name = spec.strip().partition(":")
        if domain == "all":
            level = parse_log_level(level_name) if sep else logging.INFO
            enabled.update({name: level for name in LOG_DOMAINS})
            continue
        if domain not in LOG_DOMAINS:
            allowed = ", ".join(LOG_DOMAINS)
            raise ValueError(
                f"invalid log domain '{domain}' (expected one of: all, {allowed})"
            )
        enabled[domain] = parse_log_level(level_name) if sep else logging.INFO
    return enabled


def configure_logging(
    *, enabled: Mapping[str, int], log_stderr: bool, log_file: str | None
) -> None:
    # Reset only our domain loggers so repeated configuration doesn't duplicate handlers.
    for logger_name in LOG_DOMAINS.values():
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.propagate = False
        logger.setLevel(logging.CRITICAL + 1)

    if not enabled:
        return

    if not log_stderr and not log_file:
        log_stderr = True

    formatter = logging.Formatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    if log_stderr:
        stderr_handler = logging.StreamHandler()
        stderr_handler.setFormatter(formatter)
        handlers.append(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for domain, level in enabled.items():
        logger = logging.getLogger(LOG_DOMAINS[domain])
        logger.setLevel(level)
        for handler in handlers:
            logger.addHandler(handler)


def configure_logging_from_env(
    environ: Mapping[str, str] | None = None, *, log_file: str | None = None
) -> dict[str, int]:
    env = os.environ if environ is None else environ
    raw = env.get(LOG_ENV_VAR, "")
    specs = [part for part in raw.split(",") if part.strip()]
    enabled = parse_log_specs(specs)
    configure_logging(enabled=enabled, log_stderr=log_file is None, log_file=log_file)
    return enabled
