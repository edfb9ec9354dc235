from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from lightcrl.database import Base


class KeyAlgorithm(str, Enum):
    RSA = "RSA"
    ECDSA = "ECDSA"
    EdDSA = "EdDSA"


class Key(Base):
    """A CA signing key, readable only through ``KeyStoreSigner``.

    The PEM (and its password, for protected keys) are sealed with the master
    key; a deleted key can no longer sign CRLs for its CA.
    """

    __tablename__ = "keys"

    id = Column(Integer, primary_key=True, index=True)
    algorithm = Column(String(16), nullable=False)
    encrypted_pem = Column(Text, nullable=False)
    encrypted_password = Column(Text, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    certificates = relationship("Certificate", back_populates="key")
