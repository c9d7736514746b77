"""Base for services owning a DB directory (DBUUID + signature layout)."""

from __future__ import annotations

import logging
from pathlib import Path

from core.errors import BusyError, CannotStartError
from services.dbdir import DBDirectory
from services.lifecycle import Service

logger = logging.getLogger(__name__)


class DBService(Service):
    """Service whose data lives in ``<directory>/<DBUUID>``."""

    owns_directory = True

    @property
    def directory(self) -> Path:
        directory: Path = getattr(self.config, "directory")
        return directory

    def db_directory(self) -> DBDirectory:
        return DBDirectory.load(self.kind, self.directory)

    @property
    def data_dir(self) -> Path:
        """Data directory handed to the process.

        Raises:
            CannotStartError: If the DB directory has not been installed
        """
        if not self.directory.exists():
            raise CannotStartError(
                f"{self.kind} '{self.name}' is not installed ({self.directory} is missing)",
                name=self.name,
            )
        return self.db_directory().data_dir

    async def install(self) -> None:
        await super().install()
        DBDirectory.load_or_install(self.kind, self.directory)

    async def prepare(self) -> None:
        if not self.directory.exists():
            await self.install()

    async def reset_db(self) -> None:
        DBDirectory.reset(self.kind, self.directory)
        logger.info("stores.reset", extra={"service": self.name, "directory": str(self.directory)})

    async def is_busy(self) -> None:
        """Refuse to start if another instance of this kind runs on the same directory."""
        for entry in self.scan():
            other = type(self).from_process(entry)
            if other is None or other.host == self.host:
                continue
            if getattr(other.config, "directory", None) == self.directory:
                raise BusyError(
                    f"{self.kind} directory '{self.directory}' is used by '{other.name}' "
                    f"(pid {entry.pid}, {other.host})",
                    name=self.name,
                    pid=entry.pid,
                    directory=str(self.directory),
                )
