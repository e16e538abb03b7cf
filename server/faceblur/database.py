"""
Persistent key-value store for pipeline settings.

Holds the `enabled` flag and the reference fingerprints. Values are JSON,
encrypted at rest with Fernet: a leaked database does not expose the
landmark or embedding data of the people being hidden.
Uses SQLite by default - any SQLAlchemy URL works.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional, Sequence, Tuple

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Column, DateTime, LargeBinary, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from faceblur.config import FingerprintKind
from faceblur.fingerprint import FINGERPRINT_TYPES, Fingerprint, dump_fingerprints, load_fingerprints

logger = logging.getLogger(__name__)

Base = declarative_base()

ENABLED_KEY = "enabled"
REFERENCES_KEY = "reference_fingerprints"


class EncryptionManager:
    """Handles encryption/decryption of stored values."""

    def __init__(self, key: Optional[str] = None):
        if not key:
            # Development only: data written with this key is unreadable after a restart
            key = Fernet.generate_key()
            logger.warning("Generated new encryption key. Set ENCRYPTION_KEY env var in production!")
        self.key = key.encode() if isinstance(key, str) else key
        self.cipher = Fernet(self.key)

    def encrypt_value(self, value: Any) -> bytes:
        return self.cipher.encrypt(json.dumps(value).encode("utf-8"))

    def decrypt_value(self, encrypted_data: bytes) -> Any:
        return json.loads(self.cipher.decrypt(encrypted_data).decode("utf-8"))


class PipelineSetting(Base):
    """One encrypted key-value pair."""
    __tablename__ = "pipeline_settings"

    key = Column(String, primary_key=True)
    value = Column(LargeBinary, nullable=False)  # Fernet token of the JSON value
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def create_session_factory(database_url: str) -> sessionmaker:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ============================================================================
# Database Operations
# ============================================================================

def get_setting(db: Session, key: str) -> Optional[PipelineSetting]:
    return db.query(PipelineSetting).filter(PipelineSetting.key == key).first()


def put_setting(db: Session, key: str, value: bytes) -> PipelineSetting:
    setting = get_setting(db, key)
    if setting is None:
        setting = PipelineSetting(key=key, value=value)
        db.add(setting)
    else:
        setting.value = value
    db.commit()
    return setting


class SettingsStore:
    """
    Encrypted persistence of `enabled` and the reference set.

    Read once at startup; written whenever either changes.
    """

    def __init__(self, database_url: str, encryption_key: Optional[str] = None):
        self.session_factory = create_session_factory(database_url)
        self.encryption = EncryptionManager(encryption_key)

    def _read(self, key: str, default: Any) -> Any:
        with self.session_factory() as db:
            setting = get_setting(db, key)
            if setting is None:
                return default
            try:
                return self.encryption.decrypt_value(setting.value)
            except InvalidToken:
                logger.warning("Stored %r was encrypted with another key; ignoring it", key)
                return default

    def _write(self, key: str, value: Any) -> None:
        with self.session_factory() as db:
            put_setting(db, key, self.encryption.encrypt_value(value))

    def load_enabled(self) -> bool:
        return bool(self._read(ENABLED_KEY, False))

    def save_enabled(self, enabled: bool) -> None:
        self._write(ENABLED_KEY, bool(enabled))

    def load_references(self, kind: FingerprintKind) -> Tuple[Fingerprint, ...]:
        """
        Stored fingerprints of the configured variant.

        Fingerprints of another variant (the deployment switched strategy)
        cannot be compared and are dropped.
        """
        try:
            fingerprints = load_fingerprints(self._read(REFERENCES_KEY, []))
        except ValueError as e:
            logger.warning("Stored reference set is invalid; ignoring it: %s", e)
            return ()

        expected = FINGERPRINT_TYPES[FingerprintKind(kind)]
        kept = tuple(fp for fp in fingerprints if isinstance(fp, expected))
        if len(kept) != len(fingerprints):
            logger.warning(
                "Dropped %d stored fingerprints that are not %s",
                len(fingerprints) - len(kept), FingerprintKind(kind).value,
            )
        return kept

    def save_references(self, fingerprints: Sequence[Fingerprint]) -> None:
        self._write(REFERENCES_KEY, dump_fingerprints(fingerprints))
