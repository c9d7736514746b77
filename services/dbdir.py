"""On-disk DB directory layout and compatibility signatures.

A DB directory holds::

    <directory>/DBUUID               random hex id, written once at install
    <directory>/<DBUUID>/            the data directory handed to the process
    <directory>/chainlab-dbsig.json  {consumer name: {service_kind, fields}}

Two consumers may share a directory only if they declare identical signature
fields under the same name; a conflicting request never modifies the file.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from core.errors import ConflictError

logger = logging.getLogger(__name__)

DBUUID_BASENAME = "DBUUID"
DBSIG_BASENAME = "chainlab-dbsig.json"


@dataclass(frozen=True)
class DBSignature:
    """Compatibility fields a consumer requires from a shared DB directory.

    Attributes:
        name: Consumer config name the signature is keyed by
        service_kind: Kind of the consuming service
        fields: chain_id, hub, asset, kyc, upstream (chain node DB UUID), ...
    """

    name: str
    service_kind: str
    fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must not be empty")
        if not self.service_kind:
            raise ValueError("service_kind must not be empty")

    def to_dict(self) -> dict[str, Any]:
        return {"service_kind": self.service_kind, "fields": dict(self.fields)}

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> DBSignature:
        return cls(name=name, service_kind=data["service_kind"], fields=dict(data.get("fields") or {}))

    def diff(self, other: DBSignature) -> dict[str, tuple[Any, Any]]:
        """Return ``{field: (self value, other value)}`` for every differing field."""
        keys = set(self.fields) | set(other.fields)
        changes = {
            key: (self.fields.get(key), other.fields.get(key))
            for key in sorted(keys)
            if self.fields.get(key) != other.fields.get(key)
        }
        if self.service_kind != other.service_kind:
            changes["service_kind"] = (self.service_kind, other.service_kind)
        return changes


def read_dbuuid(directory: Path) -> str | None:
    """Return the DBUUID stored in ``directory`` or None if absent."""
    path = directory / DBUUID_BASENAME
    if not path.is_file():
        return None
    value = path.read_text(encoding="utf-8").strip()
    return value or None


class DBDirectory:
    """A loaded DB directory.

    Attributes:
        kind: Service kind owning the directory
        directory: Absolute directory path
        dbuuid: Identifier stored in the DBUUID file
    """

    def __init__(self, kind: str, directory: Path, dbuuid: str) -> None:
        self.kind = kind
        self.directory = directory
        self.dbuuid = dbuuid

    @property
    def data_dir(self) -> Path:
        return self.directory / self.dbuuid

    @property
    def sig_file(self) -> Path:
        return self.directory / DBSIG_BASENAME

    def _load_sigs(self) -> dict[str, DBSignature]:
        if not self.sig_file.exists():
            return {}
        raw = json.loads(self.sig_file.read_text(encoding="utf-8") or "{}")
        if not isinstance(raw, dict):
            raise ConflictError(
                f"Corrupted signature file '{self.sig_file}'", directory=str(self.directory)
            )
        return {name: DBSignature.from_dict(name, data) for name, data in raw.items()}

    def _save_sigs(self, sigs: dict[str, DBSignature]) -> None:
        payload = {name: sig.to_dict() for name, sig in sorted(sigs.items())}
        tmp = self.sig_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.sig_file)

    def get_sig(self, name: str) -> DBSignature | None:
        return self._load_sigs().get(name)

    def signatures(self) -> dict[str, DBSignature]:
        return self._load_sigs()

    def used_by_kind(self, service_kind: str) -> bool:
        """True if any recorded consumer is of ``service_kind``."""
        return any(sig.service_kind == service_kind for sig in self._load_sigs().values())

    def is_sig_compatible(self, signature: DBSignature) -> bool:
        """True if ``signature.name`` is absent or recorded with identical fields."""
        existing = self._load_sigs().get(signature.name)
        if existing is None:
            return True
        return existing.service_kind == signature.service_kind and existing.fields == signature.fields

    def add_sig(self, signature: DBSignature) -> bool:
        """Record ``signature``.

        Returns:
            True if added or already identical, False on conflict (file untouched)
        """
        sigs = self._load_sigs()
        existing = sigs.get(signature.name)
        if existing is not None:
            compatible = (
                existing.service_kind == signature.service_kind
                and existing.fields == signature.fields
            )
            if not compatible:
                logger.warning(
                    "dbdir.signature_conflict",
                    extra={
                        "directory": str(self.directory),
                        "consumer": signature.name,
                        "diff": {k: list(v) for k, v in existing.diff(signature).items()},
                    },
                )
            return compatible
        sigs[signature.name] = signature
        self._save_sigs(sigs)
        logger.info(
            "dbdir.signature_added",
            extra={"directory": str(self.directory), "consumer": signature.name},
        )
        return True

    def require_sig(self, signature: DBSignature) -> None:
        """Record ``signature`` or raise ConflictError naming the differing fields."""
        if self.add_sig(signature):
            return
        existing = self.get_sig(signature.name)
        diff = existing.diff(signature) if existing is not None else {}
        details = ", ".join(f"{key}: {old!r} != {new!r}" for key, (old, new) in diff.items())
        raise ConflictError(
            f"Incompatible {self.kind} db directory '{self.directory}' "
            f"(signature mismatch for '{signature.name}': {details})",
            directory=str(self.directory),
            consumer=signature.name,
            fields=sorted(diff),
        )

    @classmethod
    def install(
        cls,
        kind: str,
        directory: Path,
        signature: DBSignature | None = None,
    ) -> DBDirectory:
        """Create a fresh DB directory.

        Raises:
            ConflictError: If the directory already exists
        """
        if directory.exists():
            raise ConflictError(
                f"{kind} db directory '{directory}' already exists", directory=str(directory)
            )
        dbuuid = uuid.uuid4().hex
        directory.mkdir(parents=True)
        (directory / DBUUID_BASENAME).write_text(dbuuid, encoding="utf-8")
        (directory / dbuuid).mkdir()
        dbdir = cls(kind, directory, dbuuid)
        dbdir._save_sigs({} if signature is None else {signature.name: signature})
        logger.info("dbdir.installed", extra={"kind": kind, "directory": str(directory)})
        return dbdir

    @classmethod
    def load(
        cls,
        kind: str,
        directory: Path,
        requested_signature: DBSignature | None = None,
    ) -> DBDirectory:
        """Open an installed DB directory, optionally requiring a signature.

        Raises:
            ConflictError: If the directory is not a valid DB directory or the
                requested signature conflicts with a recorded one
        """
        dbuuid = read_dbuuid(directory)
        if dbuuid is None or not (directory / dbuuid).is_dir():
            raise ConflictError(
                f"Invalid {kind} db directory '{directory}'", directory=str(directory)
            )
        dbdir = cls(kind, directory, dbuuid)
        if requested_signature is not None:
            dbdir.require_sig(requested_signature)
        return dbdir

    @classmethod
    def load_or_install(
        cls,
        kind: str,
        directory: Path,
        requested_signature: DBSignature | None = None,
    ) -> DBDirectory:
        if not directory.exists():
            return cls.install(kind, directory, requested_signature)
        return cls.load(kind, directory, requested_signature)

    @classmethod
    def load_data_dir(cls, kind: str, data_dir: Path) -> DBDirectory:
        """Open the DB directory owning ``data_dir`` (``<directory>/<DBUUID>``).

        Raises:
            ConflictError: If ``data_dir`` is not the data dir of a DB directory
        """
        directory = data_dir.parent
        if read_dbuuid(directory) != data_dir.name:
            raise ConflictError(
                f"'{data_dir}' is not the data directory of a {kind} db directory",
                directory=str(directory),
            )
        return cls.load(kind, directory)

    @classmethod
    def reset(cls, kind: str, directory: Path) -> DBDirectory:
        """Wipe ``directory`` and install an empty one with a new DBUUID."""
        if directory.exists():
            shutil.rmtree(directory)
        dbdir = cls.install(kind, directory)
        logger.info("dbdir.reset", extra={"kind": kind, "directory": str(directory)})
        return dbdir
