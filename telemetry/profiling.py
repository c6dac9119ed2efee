"""
Continuous CPU profiling via Pyroscope.

Profiling is optional: a disabled decision, a failed source mapper or a failing
agent start all leave the service running without profiles.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pyroscope

from telemetry.config import TelemetryConfig
from telemetry.gate import CapabilityDecision

logger = logging.getLogger(__name__)


class SourceMapper:
    """Resolves absolute source file paths to paths relative to search roots.

    Flamegraph frames carry absolute paths from the running interpreter; the
    mapper turns them into repository-relative paths when they live under one
    of the configured roots.
    """

    def __init__(self, roots: Sequence[Path]):
        # Longest root first so nested roots win
        self.roots: List[Path] = sorted(roots, key=lambda p: len(p.parts), reverse=True)

    @classmethod
    def create(cls, root_dirs: Iterable[str]) -> "SourceMapper":
        """Build a mapper from directories. Raises ValueError if none exist."""
        root_dirs = list(root_dirs)
        roots = []
        for root in root_dirs:
            path = Path(root).expanduser().resolve()
            if path.is_dir():
                roots.append(path)
            else:
                logger.debug(f"Source root does not exist: {root}")
        if not roots:
            raise ValueError(f"No source directories found in {root_dirs}")
        return cls(roots)

    def resolve(self, filename: str) -> str:
        """Return filename relative to the first matching root, else unchanged."""
        path = Path(filename)
        if not path.is_absolute():
            return filename
        for root in self.roots:
            try:
                return path.relative_to(root).as_posix()
            except ValueError:
                continue
        return filename


def create_source_mapper(root_dirs: Optional[Sequence[str]]) -> Optional[SourceMapper]:
    """Build a SourceMapper if possible.

    Returns None when no roots were requested or the mapper cannot be built;
    profiling then runs without symbol resolution.
    """
    if not root_dirs:
        return None
    try:
        return SourceMapper.create(root_dirs)
    except (ValueError, OSError) as e:
        logger.warning(f"SourceMapper create failed: {e}")
        return None


@dataclass(frozen=True)
class ProfilerHandle:
    """The running Pyroscope agent for this process."""

    application_name: str
    server_address: str
    tags: Mapping[str, str] = field(default_factory=dict)
    source_mapper: Optional[SourceMapper] = None


def profiler_tags(
    config: TelemetryConfig, extra_tags: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """Static tags attached to every profile."""
    tags = dict(config.profiling_tags)
    if extra_tags:
        tags.update(extra_tags)
    return tags


def init_profiling(
    config: TelemetryConfig,
    decision: CapabilityDecision,
    extra_tags: Optional[Mapping[str, str]] = None,
    source_roots: Optional[Sequence[str]] = (".",),
) -> Optional[ProfilerHandle]:
    """Start the Pyroscope agent if profiling is enabled.

    The application name matches the service name so profiles correlate with
    traces. Raises if the agent cannot be started; the caller decides how to
    degrade.
    """
    if not decision.enabled:
        logger.debug(f"Pyroscope not initialized - {decision.reason}")
        return None

    server_address = config.profiling_endpoint or ""
    tags = profiler_tags(config, extra_tags)
    source_mapper = create_source_mapper(source_roots)

    kwargs = {
        "application_name": config.service_name,
        "server_address": server_address,
        "tags": tags,
        "oncpu": True,
        "report_pid": True,
    }
    if config.profiling_auth:
        kwargs["basic_auth_username"] = config.profiling_auth.user
        kwargs["basic_auth_password"] = config.profiling_auth.password

    pyroscope.configure(**kwargs)

    logger.debug(
        f"Pyroscope started for {config.service_name} (pid {os.getpid()}), tags={tags}"
    )
    return ProfilerHandle(
        application_name=config.service_name,
        server_address=server_address,
        tags=tags,
        source_mapper=source_mapper,
    )
