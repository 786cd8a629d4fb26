from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenlogin.logging import get_logger
from tokenlogin.service.errors import ConflictError, UserNotFound, ValidationError
from tokenlogin.storage.errors import ConstraintViolation
from tokenlogin.storage.models import FactorPreference, User

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_user(self, *, username=None, email=None, profile=None) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        ...

    def set_profile_entry(self, user_id: str, key: str, value) -> None:
        ...

    def get_factor_preference(self, user_id: str, profile_key: str) -> Optional[FactorPreference]:
        ...


class AccountService:
    """Primary credential checks and second-factor contact preferences."""

    def __init__(self, store: AccountStore, *, profile_key: str) -> None:
        self.store = store
        self.profile_key = profile_key
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the selector matches nobody, so both paths hash
        self._dummy_hash = self._pwd_hasher.hash("tokenlogin-dummy-password")

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def find_principal(self, selector: str) -> Optional[User]:
        """Resolve a username or, when the selector contains ``@``, an email."""
        if not selector:
            return None
        if "@" in selector:
            return self.store.get_user_by_email(selector)
        return self.store.get_user_by_username(selector)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def find_principal_by_credential(self, selector: str, password: str) -> User:
        """Return the principal for ``selector``/``password`` or raise :class:`UserNotFound`.

        Unknown selectors and wrong passwords raise the same error.
        """
        user = self.find_principal(selector)
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password or "")
            except VerificationError:
                pass
            raise UserNotFound()
        if not self.verify_password(user.id, password or ""):
            raise UserNotFound()
        return user

    def register(
        self,
        *,
        password: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        contact: Optional[str] = None,
        factor: Optional[str] = None,
    ) -> User:
        if not password:
            raise ValidationError("password is required")
        if not username and not email:
            raise ValidationError("username or email is required")
        if username and "@" in username:
            raise ValidationError("usernames cannot contain '@'")
        profile = {}
        if contact or factor:
            if not (contact and factor):
                raise ValidationError("contact and factor must be set together")
            profile[self.profile_key] = FactorPreference(contact=contact, factor=factor).to_dict()
        try:
            user = self.store.create_user(username=username, email=email, profile=profile)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        logger.info("principal_registered", user_id=user.id, has_factor=bool(factor))
        return user

    def set_factor_preference(self, user_id: str, contact: str, factor: str) -> FactorPreference:
        preference = FactorPreference(contact=contact, factor=factor)
        try:
            self.store.set_profile_entry(user_id, self.profile_key, preference.to_dict())
        except ConstraintViolation as exc:
            raise UserNotFound() from exc
        return preference

    def get_factor_preference(self, user_id: str) -> Optional[FactorPreference]:
        return self.store.get_factor_preference(user_id, self.profile_key)
