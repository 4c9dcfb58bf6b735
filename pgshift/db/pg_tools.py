"""
Wrapper around the PostgreSQL client binaries (pg_dump, psql).

Connection URLs are passed through ``--dbname`` and never echoed: every
command line this module logs has its URL masked.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .base import mask_url

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+)(?:\.\d+)?")

# psql reports statement failures as "psql:<file>:<line>: ERROR:  ..." (or a bare
# "ERROR:" on stdin); anchoring on the severity field keeps notices and
# warnings that merely mention the word out of the count.
_ERROR_MARKER_RE = re.compile(r"^(?:psql:[^\n]*?:\d+: )?(?:ERROR|FATAL):  ", re.MULTILINE)


def count_error_markers(log_text: str) -> int:
    """Count error-severity messages in psql output."""
    return len(_ERROR_MARKER_RE.findall(log_text))


@dataclass
class CommandResult:
    """Outcome of one client-tool invocation."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    env_overrides: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class PgTools:
    """Runs pg_dump and psql as subprocesses.

    No timeout is applied: long transfers are bounded only by the transport.
    """

    def __init__(self, pg_dump_bin: str = "pg_dump", psql_bin: str = "psql"):
        self.pg_dump_bin = pg_dump_bin
        self.psql_bin = psql_bin

    def missing_tools(self) -> List[str]:
        """Return the client binaries that cannot be found on PATH."""
        return [
            binary
            for binary in (self.pg_dump_bin, self.psql_bin)
            if shutil.which(binary) is None
        ]

    def pg_dump_major_version(self) -> Optional[int]:
        """Return the major version of pg_dump, or None if it cannot be determined."""
        result = self._run([self.pg_dump_bin, "--version"], url=None)
        if not result.ok:
            return None
        match = _VERSION_RE.search(result.stdout)
        return int(match.group(1)) if match else None

    def dump(self, url: str, output: Path, options: List[str]) -> CommandResult:
        """Run pg_dump against ``url`` writing into ``output``.

        Args:
            url: libpq connection URL
            output: File the dump is written to
            options: pg_dump options (--schema-only, --data-only, ...)
        """
        args = [self.pg_dump_bin, f"--dbname={url}", f"--file={output}", *options]
        return self._run(args, url=url)

    def run_script(
        self,
        url: str,
        script: Path,
        session_options: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Apply a SQL script with psql, continuing past statement errors.

        Args:
            url: libpq connection URL
            script: SQL file to apply
            session_options: GUCs set for the psql session via PGOPTIONS
        """
        args = [
            self.psql_bin,
            f"--dbname={url}",
            "--no-psqlrc",
            "--set=ON_ERROR_STOP=0",
            f"--file={script}",
        ]
        env_overrides: Dict[str, str] = {}
        if session_options:
            env_overrides["PGOPTIONS"] = " ".join(
                f"-c {name}={value}" for name, value in session_options.items()
            )
        return self._run(args, url=url, env_overrides=env_overrides)

    def _run(
        self,
        args: List[str],
        url: Optional[str],
        env_overrides: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        display = [
            (a.replace(url, mask_url(url)) if url and url in a else a) for a in args
        ]
        logger.info(f"Running: {' '.join(display)}")

        env = dict(os.environ)
        env.update(env_overrides or {})
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                check=False,
                env=env,
            )
        except FileNotFoundError as e:
            return CommandResult(
                args=display,
                returncode=127,
                stderr=f"{args[0]}: {e.strerror}",
                env_overrides=env_overrides or {},
            )

        return CommandResult(
            args=display,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            env_overrides=env_overrides or {},
        )
