import re
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional
import firebase_admin
from firebase_admin import credentials as fb_credentials, auth as fb_auth
from firebase_admin.exceptions import FirebaseError

from errors import InvalidArgument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    uid: str
    phone: str
    display_name: Optional[str] = None


class IdentityServiceError(Exception):
    pass


class IdentityNotFound(IdentityServiceError):
    pass


class PhoneAlreadyRegistered(IdentityServiceError):
    pass


# ─── PHONE NUMBERS ─────────────────────────────────────
_SEPARATORS = re.compile(r"[\s\-().]")


def normalize_phone(phone: str, country_code: str = "+91") -> str:
    """Return the phone in E.164 form, adding ``country_code`` to local numbers."""
    if not phone or not isinstance(phone, str):
        raise InvalidArgument("A phone number is required.")
    digits = _SEPARATORS.sub("", phone.strip())
    code = country_code.lstrip("+")
    if digits.startswith("+"):
        if digits[1:].isdigit() and 8 <= len(digits) - 1 <= 15:
            return digits
    elif digits.isdigit():
        if len(digits) == 10:
            return f"+{code}{digits}"
        if len(digits) == 10 + len(code) and digits.startswith(code):
            return f"+{digits}"
    raise InvalidArgument(f"'{phone}' is not a valid phone number.")


# ─── FIREBASE ADMIN INIT ─────────────────────────────
def init_firebase(cred_path: str = "", project_id: str = ""):
    """Initialise the default Firebase app once for the process."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    if cred_path and os.path.exists(cred_path):
        return firebase_admin.initialize_app(fb_credentials.Certificate(cred_path))
    if project_id:
        # Application Default Credentials
        return firebase_admin.initialize_app(options={'projectId': project_id})
    return firebase_admin.initialize_app()


class FirebaseIdentityService:
    """Firebase Authentication behind the identity operations the workflows use.

    The Admin SDK is blocking, so every call runs in a worker thread.
    """

    def __init__(self, app=None):
        self._app = app

    async def lookup_by_phone(self, phone: str) -> Identity:
        try:
            record = await asyncio.to_thread(fb_auth.get_user_by_phone_number, phone, app=self._app)
        except fb_auth.UserNotFoundError:
            raise IdentityNotFound(phone)
        except (FirebaseError, ValueError) as e:
            raise IdentityServiceError(f"Lookup failed for {phone}: {e}") from e
        return Identity(uid=record.uid, phone=record.phone_number, display_name=record.display_name)

    async def create_identity(self, phone: str, display_name: Optional[str]) -> Identity:
        try:
            record = await asyncio.to_thread(
                fb_auth.create_user, phone_number=phone, display_name=display_name, app=self._app
            )
        except fb_auth.PhoneNumberAlreadyExistsError:
            raise PhoneAlreadyRegistered(phone)
        except (FirebaseError, ValueError) as e:
            raise IdentityServiceError(f"Could not create user for {phone}: {e}") from e
        return Identity(uid=record.uid, phone=record.phone_number, display_name=record.display_name)

    async def delete_identity(self, uid: str):
        try:
            await asyncio.to_thread(fb_auth.delete_user, uid, app=self._app)
        except FirebaseError as e:
            raise IdentityServiceError(f"Could not delete user {uid}: {e}") from e

    async def is_admin(self, uid: str) -> bool:
        try:
            record = await asyncio.to_thread(fb_auth.get_user, uid, app=self._app)
        except fb_auth.UserNotFoundError:
            return False
        except FirebaseError as e:
            raise IdentityServiceError(f"Could not load user {uid}: {e}") from e
        return (record.custom_claims or {}).get("admin") is True

    async def grant_admin(self, uid: str):
        try:
            await asyncio.to_thread(fb_auth.set_custom_user_claims, uid, {"admin": True}, app=self._app)
        except fb_auth.UserNotFoundError:
            raise IdentityNotFound(uid)
        except FirebaseError as e:
            raise IdentityServiceError(f"Could not set claims for {uid}: {e}") from e

    async def verify_token(self, id_token: str) -> dict:
        try:
            return await asyncio.to_thread(fb_auth.verify_id_token, id_token, app=self._app)
        except (FirebaseError, ValueError) as e:
            raise IdentityServiceError(f"Token verification failed: {e}") from e
