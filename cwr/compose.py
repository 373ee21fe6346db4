"""Compose document -> service definitions."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import yaml

from .config import ConfigError

SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,62}$")
PORT_RE = re.compile(r"^(?:(?P<ip>\d{1,3}(?:\.\d{1,3}){3}):)?(?:(?P<published>\d+):)?(?P<target>\d+)(?:/(?P<proto>tcp|udp|sctp))?$")


class ComposeError(ConfigError):
    pass


@dataclass(frozen=True)
class PortSpec:
    target: int
    protocol: str = "tcp"
    published: int | None = None
    host_ip: str | None = None

    @property
    def key(self) -> str:
        return f"{self.target}/{self.protocol}"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str
    container_name: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    ports: list[PortSpec] = field(default_factory=list)
    command: list[str] | str | None = None

    def docker_ports(self) -> dict[str, Any]:
        """Port mapping in the shape docker's create call accepts."""
        out: dict[str, Any] = {}
        for p in self.ports:
            if p.published is None:
                out[p.key] = None
            elif p.host_ip:
                out[p.key] = (p.host_ip, p.published)
            else:
                out[p.key] = p.published
        return out


def _environment(name: str, raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        out: dict[str, str] = {}
        for item in raw:
            key, _, value = str(item).partition("=")
            out[key] = value
        return out
    raise ComposeError(f"service '{name}': environment must be a list or a mapping")


def _port(name: str, raw: Any) -> PortSpec:
    if isinstance(raw, dict):
        try:
            target = int(raw["target"])
        except (KeyError, TypeError, ValueError):
            raise ComposeError(f"service '{name}': port mapping needs an integer 'target'") from None
        published = raw.get("published")
        return PortSpec(
            target=target,
            protocol=str(raw.get("protocol") or "tcp"),
            published=int(published) if published not in (None, "") else None,
            host_ip=raw.get("host_ip"),
        )
    m = PORT_RE.match(str(raw))
    if not m:
        raise ComposeError(f"service '{name}': unsupported port {raw!r}")
    published = m.group("published")
    return PortSpec(
        target=int(m.group("target")),
        protocol=m.group("proto") or "tcp",
        published=int(published) if published else None,
        host_ip=m.group("ip"),
    )


def parse(lines: Iterable[str]) -> list[ServiceSpec]:
    """Parse compose document lines into service specs, in document order."""
    text = "\n".join(lines)
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ComposeError(f"compose_file is not valid YAML: {e}") from e

    if not isinstance(doc, dict) or not isinstance(doc.get("services"), dict) or not doc["services"]:
        raise ComposeError("compose_file must define at least one service under 'services'")

    services: list[ServiceSpec] = []
    for name, body in doc["services"].items():
        name = str(name)
        if not SERVICE_NAME_RE.match(name):
            raise ComposeError(f"invalid service name {name!r}")
        if not isinstance(body, dict) or not body.get("image"):
            raise ComposeError(f"service '{name}' must set 'image'")
        services.append(
            ServiceSpec(
                name=name,
                image=str(body["image"]),
                container_name=body.get("container_name"),
                environment=_environment(name, body.get("environment")),
                ports=[_port(name, p) for p in body.get("ports") or []],
                command=body.get("command"),
            )
        )
    return services
