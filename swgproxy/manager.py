"""Service configuration and the manager that runs every configured service."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from swgproxy.client import ClientConfig
from swgproxy.config import Service, load_json_strict
from swgproxy.server import ServerConfig

_logger = logging.getLogger("swgproxy.manager")


def _log(level: int, message: str, **fields: Any) -> None:
    if _logger.isEnabledFor(level):
        _logger.log(level, message, extra={"fields": fields})


def _as_list(key: str, value: Any) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f"cannot use {type(value).__name__} as array for field {key}")
    return value


def _check_pprof(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise ValueError("pprof configuration must be a JSON object")
    for key, item in value.items():
        if key == "enabled":
            if item is not None and not isinstance(item, bool):
                raise ValueError(f"cannot use {type(item).__name__} as bool for field {key}")
            if item:
                raise ValueError("the pprof service is not available")
        elif key == "listenAddress":
            if item is not None and not isinstance(item, str):
                raise ValueError(f"cannot use {type(item).__name__} as string for field {key}")
        else:
            raise ValueError(f'unknown field "{key}"')


@dataclass
class Config:
    """Every server and client service of one configuration file."""

    servers: list[ServerConfig] = field(default_factory=list)
    clients: list[ClientConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Config:
        """Build a config from a decoded JSON object, rejecting unknown fields."""
        if not isinstance(data, Mapping):
            raise ValueError("configuration must be a JSON object")
        config = cls()
        for key, value in data.items():
            if value is None:
                continue
            if key == "servers":
                config.servers = [ServerConfig.from_dict(item) for item in _as_list(key, value)]
            elif key == "clients":
                config.clients = [ClientConfig.from_dict(item) for item in _as_list(key, value)]
            elif key == "pprof":
                _check_pprof(value)
            else:
                raise ValueError(f'unknown field "{key}"')
        return config

    def manager(self) -> Manager:
        """Create every configured service and return a manager for them."""
        if not self.servers and not self.clients:
            raise ValueError("no services to start")

        services: list[Service] = []
        for server_config in self.servers:
            try:
                services.append(server_config.server())
            except Exception as exc:
                raise ValueError(
                    f"failed to create server service {server_config.name}: {exc}"
                ) from exc
        for client_config in self.clients:
            try:
                services.append(client_config.client())
            except Exception as exc:
                raise ValueError(
                    f"failed to create client service {client_config.name}: {exc}"
                ) from exc
        return Manager(services)


class Manager:
    """Starts and stops a list of services in order."""

    def __init__(self, services: Sequence[Service]) -> None:
        self.services = list(services)

    async def start(self) -> None:
        """Start every service, stopping at the first one that fails."""
        for service in self.services:
            try:
                await service.start()
            except Exception as exc:
                raise RuntimeError(f"failed to start {service}: {exc}") from exc

    async def stop(self) -> None:
        """Stop every service, logging the ones that fail to stop."""
        for service in self.services:
            try:
                await service.stop()
            except Exception as exc:
                _log(
                    logging.WARNING,
                    "Failed to stop service",
                    service=str(service),
                    error=str(exc),
                )
            _log(logging.INFO, "Stopped service", service=str(service))


def load_config(path: str) -> Config:
    """Load a JSON configuration file, rejecting unknown fields."""
    return Config.from_dict(load_json_strict(path))