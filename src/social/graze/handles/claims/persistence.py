"""Binding persistence backends.

A binding store holds the complete domain -> DID mapping and is read and written as a whole.
The claim registry keeps its own in-memory copy and writes through on every change, so stores
only need to be correct, not fast.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from social.graze.handles.errors import PersistenceError
from social.graze.handles.model.bindings import DomainBinding

logger = logging.getLogger(__name__)

Bindings = Dict[str, str]


class BindingStore(ABC):
    """
    Persistence backend for domain bindings.

    All methods raise PersistenceError when the backing medium cannot be used.
    """

    @abstractmethod
    async def read(self) -> Bindings:
        """Return every binding as a domain -> DID mapping."""
        pass

    @abstractmethod
    async def write(self, bindings: Bindings) -> None:
        """Replace the stored bindings with the given mapping."""
        pass

    async def reload(self) -> Bindings:
        """Re-read the backing medium, discarding anything cached."""
        return await self.read()

    async def close(self) -> None:
        pass


class JsonFileBindingStore(BindingStore):
    """
    Bindings kept in a human readable JSON document.

    The layout is `{"users": {"<domain>": "<did>"}}`. A missing file reads as empty and is
    created on the first write. Writes go to a temporary file that replaces the original, so a
    crash mid-write never leaves a truncated document behind.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    async def read(self) -> Bindings:
        return await asyncio.to_thread(self._read_file)

    async def write(self, bindings: Bindings) -> None:
        await asyncio.to_thread(self._write_file, dict(bindings))

    def _read_file(self) -> Bindings:
        if not os.path.exists(self.path):
            logger.info("Binding file %s does not exist yet", self.path)
            return {}

        try:
            with open(self.path) as fd:
                document: Any = json.load(fd)
        except json.JSONDecodeError as e:
            raise PersistenceError.malformed(f"{self.path}: {e}") from e
        except OSError as e:
            raise PersistenceError.unreadable(f"{self.path}: {e}") from e

        if not isinstance(document, dict):
            raise PersistenceError.malformed(f"{self.path}: root is not an object")

        users = document.get("users", {})
        if not isinstance(users, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in users.items()
        ):
            raise PersistenceError.malformed(
                f"{self.path}: users must map domains to dids"
            )
        return dict(users)

    def _write_file(self, bindings: Bindings) -> None:
        tmp_path = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w") as fd:
                json.dump({"users": bindings}, fd, indent=4, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError.unwritable(f"{self.path}: {e}") from e


class DatabaseBindingStore(BindingStore):
    """
    Bindings kept in the `domain_bindings` PostgreSQL table.

    `write` applies the difference between the stored rows and the new mapping in a single
    transaction, so unchanged rows keep their creation time.
    """

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._engine = engine

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def read(self) -> Bindings:
        try:
            async with self._database_session_maker() as database_session:
                rows = await database_session.execute(
                    select(DomainBinding.domain, DomainBinding.did)
                )
                return {domain: did for domain, did in rows.all()}
        except SQLAlchemyError as e:
            raise PersistenceError.unreadable(str(e)) from e

    async def write(self, bindings: Bindings) -> None:
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    rows = await database_session.execute(
                        select(DomainBinding.domain, DomainBinding.did)
                    )
                    existing = {domain: did for domain, did in rows.all()}

                    removed = [
                        domain
                        for domain, did in existing.items()
                        if bindings.get(domain, None) != did
                    ]
                    if len(removed) > 0:
                        await database_session.execute(
                            delete(DomainBinding).where(DomainBinding.domain.in_(removed))
                        )

                    database_session.add_all(
                        [
                            DomainBinding(domain=domain, did=did)
                            for domain, did in bindings.items()
                            if existing.get(domain, None) != did
                        ]
                    )
        except SQLAlchemyError as e:
            raise PersistenceError.unwritable(str(e)) from e
