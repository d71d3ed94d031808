from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np
from cryptography.fernet import Fernet, InvalidToken

from .exceptions import StorageCorrupt, StorageError
from .types import Identity

GALLERY_KEY = "known_faces"


class EmbeddingCipher:
    def __init__(self, key_path: Path):
        self.key_path = Path(key_path)
        key = self._load_or_create_key()
        self.fernet = Fernet(key)

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("LIVE_VISION_GALLERY_KEY")
        if env_key:
            return env_key.encode("utf-8")
        if self.key_path.exists():
            return self.key_path.read_bytes().strip()

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        self.key_path.write_bytes(key)
        return key

    def encrypt(self, payload: str) -> bytes:
        return self.fernet.encrypt(payload.encode("utf-8"))

    def decrypt(self, blob: bytes) -> str:
        return self.fernet.decrypt(blob).decode("utf-8")


def serialize_identities(identities: List[Identity]) -> str:
    return json.dumps(
        [
            {
                "name": identity.name,
                "embeddings": [np.asarray(vector, dtype=np.float32).tolist() for vector in identity.embeddings],
            }
            for identity in identities
        ]
    )


def deserialize_identities(payload: str) -> List[Identity]:
    try:
        raw = json.loads(payload)
    except ValueError as exc:
        raise StorageCorrupt(f"Gallery payload is not valid JSON: {exc}") from exc
    if not isinstance(raw, list):
        raise StorageCorrupt("Gallery payload must be a list of identities.")

    identities: List[Identity] = []
    seen: set[str] = set()
    dimension: Optional[int] = None
    for entry in raw:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise StorageCorrupt("Gallery entry is missing a name.")
        name = entry["name"]
        vectors = entry.get("embeddings")
        if name in seen:
            raise StorageCorrupt(f"Gallery contains duplicate identity '{name}'.")
        if not isinstance(vectors, list) or not vectors:
            raise StorageCorrupt(f"Identity '{name}' has no embeddings.")

        embeddings = []
        for vector in vectors:
            try:
                array = np.asarray(vector, dtype=np.float32).reshape(-1)
            except (TypeError, ValueError) as exc:
                raise StorageCorrupt(f"Identity '{name}' has a malformed embedding: {exc}") from exc
            if dimension is None:
                dimension = array.size
            if array.size == 0 or array.size != dimension:
                raise StorageCorrupt(f"Identity '{name}' has an embedding of unexpected size {array.size}.")
            if not np.isfinite(array).all():
                raise StorageCorrupt(f"Identity '{name}' has an embedding with non-finite values.")
            embeddings.append(array)

        seen.add(name)
        identities.append(Identity(name=name, embeddings=tuple(embeddings)))
    return identities


class GalleryStore:
    """Key-value SQLite store holding the serialized gallery under one fixed key."""

    def __init__(self, db_path: Path, cipher: Optional[EmbeddingCipher] = None, key: str = GALLERY_KEY):
        self.db_path = Path(db_path)
        self.cipher = cipher
        self.key = key

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def load(self) -> List[Identity]:
        if not self.db_path.exists():
            return []
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (self.key,)).fetchone()
        except sqlite3.DatabaseError as exc:
            raise StorageCorrupt(f"Gallery database {self.db_path} is unreadable: {exc}") from exc
        if row is None:
            return []

        value = row["value"]
        if self.cipher is not None:
            try:
                payload = self.cipher.decrypt(bytes(value))
            except InvalidToken as exc:
                raise StorageCorrupt("Gallery payload could not be decrypted with the configured key.") from exc
        elif isinstance(value, bytes):
            try:
                payload = value.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise StorageCorrupt(f"Gallery payload is not text: {exc}") from exc
        else:
            payload = value
        return deserialize_identities(payload)

    def save(self, identities: List[Identity]) -> None:
        payload = serialize_identities(identities)
        value = self.cipher.encrypt(payload) if self.cipher is not None else payload
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (self.key, value, now),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to save gallery to {self.db_path}: {exc}") from exc

    def reset(self) -> Optional[Path]:
        """Drop the stored gallery.

        An unreadable database file is moved aside instead of deleted; the
        returned path points at the quarantined copy.
        """
        if not self.db_path.exists():
            return None
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (self.key,))
            return None
        except sqlite3.DatabaseError:
            stamp = datetime.now().strftime("%Y%m%d%H%M%S")
            quarantined = self.db_path.with_name(f"{self.db_path.name}.corrupt-{stamp}")
            self.db_path.replace(quarantined)
            return quarantined
