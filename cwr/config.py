"""Desired state: data model, validation and change detection."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

# OCI digest grammar: algorithm ":" encoded
DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$")

HOST_OPTION_KEYS = {"Binds", "NetworkMode", "AutoRemove"}


class ConfigError(ValueError):
    """Desired config rejected before any engine call."""

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ConflictingWorkloadSpecs(ConfigError):
    def __init__(self) -> None:
        super().__init__("only one of run_options or compose_options can be set")


class ComposeDigestMismatch(ConfigError):
    def __init__(self, digest: str) -> None:
        self.digest = digest
        super().__init__(f"compose_file must reference repo_digest {digest!r}")


@dataclass(frozen=True)
class Credentials:
    username: str = ""
    password: str = field(default="", repr=False)

    def auth_config(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}


@dataclass(frozen=True)
class RunSpec:
    """Single container created from the image."""

    env: tuple[str, ...] = ()
    args: tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=dict)
    host_options: Mapping[str, Any] = field(default_factory=dict)

    kind = "run"

    def env_map(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for item in self.env:
            key, _, value = item.partition("=")
            out[key] = value
        return out


@dataclass(frozen=True)
class ComposeSpec:
    """Multi-service compose document, kept as its original lines."""

    lines: tuple[str, ...] = ()

    kind = "compose"

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


WorkloadSpec = Union[RunSpec, ComposeSpec]


@dataclass(frozen=True)
class DesiredConfig:
    image_name: str
    digest: str
    workload: WorkloadSpec = field(default_factory=RunSpec)
    run_once: bool = False
    download_only: bool = False
    credentials: Credentials | None = None

    @property
    def image_ref(self) -> str:
        return f"{self.image_name}@{self.digest}"

    @classmethod
    def from_attributes(cls, attrs: Mapping[str, Any]) -> "DesiredConfig":
        """Build from the host's attribute mapping.

        Recognised keys: image_name, repo_digest, run_options, compose_options,
        run_once, download_only, credentials.
        """
        run_opts = attrs.get("run_options")
        compose_opts = attrs.get("compose_options")
        if run_opts is not None and compose_opts is not None:
            raise ConflictingWorkloadSpecs()

        workload: WorkloadSpec
        if compose_opts is not None:
            workload = ComposeSpec(lines=tuple(compose_opts.get("compose_file") or ()))
        else:
            run_opts = run_opts or {}
            workload = RunSpec(
                env=tuple(run_opts.get("env") or ()),
                args=tuple(run_opts.get("entry_point_args") or ()),
                options=dict(run_opts.get("options") or {}),
                host_options=dict(run_opts.get("host_options") or {}),
            )

        creds = attrs.get("credentials")
        credentials = None
        if creds is not None:
            credentials = Credentials(
                username=creds.get("username") or "",
                password=creds.get("password") or "",
            )

        return cls(
            image_name=attrs.get("image_name") or "",
            digest=attrs.get("repo_digest") or "",
            workload=workload,
            run_once=bool(attrs.get("run_once", False)),
            download_only=bool(attrs.get("download_only", False)),
            credentials=credentials,
        )


def _host_option_problems(host_opts: Mapping[str, Any]) -> list[str]:
    problems: list[str] = []
    for key in sorted(set(host_opts) - HOST_OPTION_KEYS):
        problems.append(f"host_options '{key}' is not supported")
    if "Binds" in host_opts:
        binds = host_opts["Binds"]
        if isinstance(binds, str):
            binds = [binds]
        if not isinstance(binds, list) or not binds or not all(isinstance(b, str) and b for b in binds):
            problems.append("host_options 'Binds' parameter must include a non-empty string")
    if "NetworkMode" in host_opts:
        mode = host_opts["NetworkMode"]
        if not isinstance(mode, str) or not mode:
            problems.append("host_options 'NetworkMode' parameter must include a non-empty string")
    if "AutoRemove" in host_opts and not isinstance(host_opts["AutoRemove"], bool):
        problems.append("host_options 'AutoRemove' parameter must be a boolean")
    return problems


def validate(conf: DesiredConfig) -> None:
    """Raise ConfigError listing every problem found in *conf*."""
    problems: list[str] = []

    if not conf.image_name:
        problems.append("image_name is required")
    if not conf.digest:
        problems.append("repo_digest is required")
    elif not DIGEST_RE.match(conf.digest):
        problems.append(f"repo_digest {conf.digest!r} is not a content digest (e.g. sha256:<hex>)")

    spec = conf.workload
    if isinstance(spec, ComposeSpec):
        if not spec.lines:
            problems.append("compose_file is required")
        elif conf.digest and conf.digest not in spec.text:
            # Without the digest in the document the engine would resolve a mutable tag.
            raise ComposeDigestMismatch(conf.digest)
        else:
            from .compose import parse

            try:
                parse(spec.lines)
            except ConfigError as e:
                problems.extend(e.problems)
    elif isinstance(spec, RunSpec):
        for item in spec.env:
            if not isinstance(item, str) or not item.partition("=")[0]:
                problems.append(f"env entry {item!r} must look like KEY=VALUE")
        problems.extend(_host_option_problems(spec.host_options))
    else:
        problems.append(f"unknown workload spec {type(spec).__name__}")

    if conf.credentials is not None:
        if not conf.credentials.username:
            problems.append("credentials.username is required")
        if not conf.credentials.password:
            problems.append("credentials.password is required")

    if problems:
        raise ConfigError(problems)


def has_changed(old: DesiredConfig | None, new: DesiredConfig) -> bool:
    """True when moving from *old* to *new* needs a full reconciliation pass."""
    if old is None:
        return True
    if old.image_name != new.image_name or old.digest != new.digest:
        return True
    if old.run_once != new.run_once or old.download_only != new.download_only:
        return True
    if old.credentials != new.credentials:
        return True

    a, b = old.workload, new.workload
    if type(a) is not type(b):
        return True
    if isinstance(a, RunSpec) and isinstance(b, RunSpec):
        return (
            a.env_map() != b.env_map()
            or list(a.args) != list(b.args)
            or dict(a.options) != dict(b.options)
            or dict(a.host_options) != dict(b.host_options)
        )
    if isinstance(a, ComposeSpec) and isinstance(b, ComposeSpec):
        return a.text != b.text
    return False
