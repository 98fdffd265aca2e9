"""
Credential store: user identities, hashed credentials and preferences.

Only bcrypt hashes are persisted. Accounts created through an external
identity provider carry no local credential and can never pass verify().
"""

from decimal import Decimal
from typing import Optional

import bcrypt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import User, commit_or_fail
from errors import DuplicateUsername, InvalidCredentials, NotFound, StorageFailure
from logs import get_logger

logger = get_logger(__name__)

BCRYPT_ROUNDS = 12

# Compared against when the username is unknown so both paths pay for a hash check
_DUMMY_HASH = bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt())


def _encode(raw: str) -> bytes:
    # bcrypt only looks at the first 72 bytes
    return raw.encode("utf-8")[:72]


def hash_credential(raw: str) -> str:
    return bcrypt.hashpw(_encode(raw), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def check_credential(raw: str, hashed: Optional[str]) -> bool:
    if not hashed:
        bcrypt.checkpw(_encode(raw), _DUMMY_HASH)
        return False
    return bcrypt.checkpw(_encode(raw), hashed.encode("utf-8"))


class CredentialStore:
    def __init__(self, db: Session, default_currency: str = "USD"):
        self.db = db
        self.default_currency = default_currency

    def get(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def register(self, username: str, raw_credential: str) -> User:
        if self.db.query(User).filter(User.username == username).first():
            raise DuplicateUsername()

        user = User(
            username=username,
            credential_hash=hash_credential(raw_credential),
            currency=self.default_currency,
            budget=Decimal("0"),
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent registration
            self.db.rollback()
            raise DuplicateUsername() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageFailure() from exc
        logger.info("user_registered", user_id=user.id, username=username)
        return user

    def verify(self, username: str, raw_credential: str) -> User:
        user = self.db.query(User).filter(User.username == username).first()
        hashed = user.credential_hash if user else None
        if not check_credential(raw_credential, hashed):
            logger.info("login_failed", username=username)
            raise InvalidCredentials()
        return user

    def upsert_from_external_identity(self, external_id: str, email: str) -> User:
        user = (
            self.db.query(User)
            .filter(User.external_identity_id == external_id)
            .first()
        )
        if user:
            return user

        username = email
        suffix = 1
        while self.db.query(User).filter(User.username == username).first():
            suffix += 1
            username = f"{email}#{suffix}"

        user = User(
            username=username,
            email=email,
            credential_hash=None,
            currency=self.default_currency,
            budget=Decimal("0"),
            external_identity_id=external_id,
        )
        self.db.add(user)
        commit_or_fail(self.db)
        logger.info("external_user_created", user_id=user.id, external_id=external_id)
        return user

    def update_profile(
        self,
        user_id: int,
        currency: Optional[str] = None,
        budget: Optional[Decimal] = None,
        password: Optional[str] = None,
    ) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFound("User not found")

        if currency is not None:
            user.currency = currency.upper()
        if budget is not None:
            user.budget = budget
        if password is not None:
            user.credential_hash = hash_credential(password)
        commit_or_fail(self.db)
        return user
