import numpy as np
import pytest
from cryptography.fernet import Fernet

from live_vision.exceptions import StorageCorrupt
from live_vision.gallery_store import EmbeddingCipher, GalleryStore, deserialize_identities
from live_vision.types import Identity


def _alice():
    return Identity(name="Alice", embeddings=(np.array([0.1, 0.2, 0.3], dtype=np.float32),))


def test_missing_database_loads_empty(tmp_path):
    assert GalleryStore(tmp_path / "absent.db").load() == []


def test_save_and_load(tmp_path):
    store = GalleryStore(tmp_path / "gallery.db")
    store.save([_alice()])

    loaded = store.load()
    assert [identity.name for identity in loaded] == ["Alice"]
    np.testing.assert_allclose(loaded[0].embeddings[0], [0.1, 0.2, 0.3], rtol=1e-6)


@pytest.mark.parametrize(
    "payload",
    [
        "{oops",
        '{"name": "Alice"}',
        '[{"embeddings": [[1.0]]}]',
        '[{"name": "Alice", "embeddings": []}]',
        '[{"name": "Alice", "embeddings": [[1.0]]}, {"name": "Alice", "embeddings": [[2.0]]}]',
        '[{"name": "Alice", "embeddings": [[1.0, 2.0], [1.0]]}]',
        '[{"name": "Ghost", "embeddings": [[NaN, 0.0]]}]',
        '[{"name": "Ghost", "embeddings": [[null, null]]}]',
        '[{"name": "Ghost", "embeddings": [[Infinity, 1.0]]}]',
    ],
)
def test_malformed_payloads_are_corrupt(payload):
    with pytest.raises(StorageCorrupt):
        deserialize_identities(payload)


def test_unreadable_database_file_is_quarantined(tmp_path):
    db_path = tmp_path / "gallery.db"
    db_path.write_bytes(b"this is not a sqlite database" * 64)
    store = GalleryStore(db_path)

    with pytest.raises(StorageCorrupt):
        store.load()

    quarantined = store.reset()
    assert quarantined is not None and quarantined.exists()
    assert not db_path.exists()
    assert store.load() == []


def test_encrypted_payload_round_trip_and_wrong_key(tmp_path, monkeypatch):
    monkeypatch.delenv("LIVE_VISION_GALLERY_KEY", raising=False)
    db_path = tmp_path / "gallery.db"
    cipher = EmbeddingCipher(tmp_path / "gallery.key")
    GalleryStore(db_path, cipher=cipher).save([_alice()])

    with GalleryStore(db_path)._connect() as conn:
        raw = conn.execute("SELECT value FROM kv_store").fetchone()["value"]
    assert b"Alice" not in bytes(raw)

    assert GalleryStore(db_path, cipher=EmbeddingCipher(tmp_path / "gallery.key")).load()[0].name == "Alice"

    monkeypatch.setenv("LIVE_VISION_GALLERY_KEY", Fernet.generate_key().decode("utf-8"))
    with pytest.raises(StorageCorrupt):
        GalleryStore(db_path, cipher=EmbeddingCipher(tmp_path / "other.key")).load()
