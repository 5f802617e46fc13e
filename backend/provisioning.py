"""Listener applications: submission, admin review and account provisioning.

Approving an application spans two systems. The identity (a Firebase Auth
user) is created outside the document transaction, so approval runs as a
saga: resolve or create the identity, then commit the listener profile and
the application status together. If the commit fails and the identity was
created by this run, it is deleted again so no sign-in-capable account is
left without a profile.
"""
import re
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from errors import (
    AlreadyExists, FailedPrecondition, Internal, InvalidArgument, NotFound,
    PermissionDenied, ServiceError, Unauthenticated,
)
from identity import (
    Identity, IdentityNotFound, IdentityServiceError, PhoneAlreadyRegistered, normalize_phone,
)
from store import APPLICATIONS, LISTENERS, DocumentExists, now

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
APPLICATION_STATUSES = (PENDING, APPROVED, REJECTED)

DEFAULT_REJECT_REASON = "Application did not meet requirements."
LOCAL_PHONE = re.compile(r"^\d{10}$")


@dataclass(frozen=True)
class IdentityClaim:
    """The identity an approval runs with, and whether this run created it."""
    identity: Identity
    created: bool


def build_listener_profile(uid: str, application: dict, phone: str, application_id: str) -> dict:
    return {
        "uid": uid,
        "displayName": application.get("displayName"),
        "realName": application.get("fullName"),
        "phone": phone,
        "status": "onboarding_required",
        "appStatus": "Offline",
        "createdAt": now(),
        "onboardingComplete": False,
        "isAdmin": False,
        "profession": application.get("profession"),
        "languages": application.get("languages") or [],
        # Set by the listener during onboarding
        "avatarUrl": "",
        "city": "",
        "age": 0,
        "bankAccount": application.get("bankAccount") or None,
        "ifsc": application.get("ifsc") or None,
        "bankName": application.get("bankName") or None,
        "upiId": application.get("upiId") or None,
        "totalEarnings": 0,
        "totalCalls": 0,
        "totalMinutes": 0,
        "totalMessages": 0,
        "applicationId": application_id,
    }


class ProvisioningWorkflow:
    def __init__(self, store, identity, country_code: str = "+91", timeout: float = 8.0):
        self._store = store
        self._identity = identity
        self._country_code = country_code
        self._timeout = timeout

    # ─── PRECONDITIONS ─────────────────────────────────
    async def ensure_admin(self, uid: Optional[str]):
        if not uid:
            raise Unauthenticated("The function must be called while authenticated.")
        try:
            is_admin = await self._identity.is_admin(uid)
        except IdentityServiceError as e:
            logger.error(f"Could not check admin claim for {uid}: {e}")
            raise Internal("Could not verify admin privileges.") from e
        if not is_admin:
            logger.warning(f"Non-admin user {uid} attempted to call an admin function.")
            raise PermissionDenied("The function must be called by an admin.")

    async def _load_pending(self, application_id: Optional[str]) -> dict:
        if not application_id:
            raise InvalidArgument("The function must be called with an 'applicationId'.")
        application = await self._store.get(APPLICATIONS, application_id)
        if not application:
            raise NotFound(f"Application with ID {application_id} not found.")
        if application.get("status") != PENDING:
            raise FailedPrecondition("This application has already been processed.")
        return application

    async def _with_deadline(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timed out after {self._timeout}s while {what}")
            raise Internal(f"Timed out while {what}. Please retry.")

    # ─── APPROVE ───────────────────────────────────────
    async def approve_application(self, application_id: Optional[str], requesting_admin_id: Optional[str]) -> dict:
        return await self._with_deadline(
            self._approve(application_id, requesting_admin_id),
            f"approving application {application_id}",
        )

    async def _approve(self, application_id, requesting_admin_id) -> dict:
        await self.ensure_admin(requesting_admin_id)
        application = await self._load_pending(application_id)
        phone = normalize_phone(application.get("phone", ""), self._country_code)

        claim = await self._resolve_identity(phone, application.get("displayName"))
        listener_uid = claim.identity.uid

        async def commit(txn):
            current = await txn.get(APPLICATIONS, application_id)
            if not current:
                raise NotFound(f"Application with ID {application_id} not found.")
            # Re-checked here so only one concurrent approval can commit
            if current.get("status") != PENDING:
                raise FailedPrecondition("This application has already been processed.")
            if await txn.get(LISTENERS, listener_uid) is not None:
                raise FailedPrecondition("This phone number is already registered to an existing listener.")
            profile = build_listener_profile(listener_uid, current, phone, application_id)
            try:
                await txn.create(LISTENERS, listener_uid, profile)
            except DocumentExists:
                raise FailedPrecondition("This phone number is already registered to an existing listener.")
            await txn.update(APPLICATIONS, application_id, fields={
                "status": APPROVED,
                "listenerUid": listener_uid,
                "approvedBy": requesting_admin_id,
                "approvedAt": now(),
            })
            return {**profile, "id": listener_uid}

        try:
            profile = await self._store.run_transaction(commit)
        except (Exception, asyncio.CancelledError) as e:
            if claim.created:
                await self._compensate(listener_uid)
            if isinstance(e, (ServiceError, asyncio.CancelledError)):
                raise
            logger.error(f"Critical error approving application {application_id}: {e!r}")
            raise Internal("An error occurred while creating the listener. The operation was rolled back.") from e

        logger.info(f"Application {application_id} approved by {requesting_admin_id}. Listener UID: {listener_uid}")
        return profile

    async def _resolve_identity(self, phone: str, display_name: Optional[str]) -> IdentityClaim:
        try:
            existing = await self._identity.lookup_by_phone(phone)
        except IdentityNotFound:
            existing = None
        except IdentityServiceError as e:
            logger.error(f"Auth error during user lookup for {phone}: {e}")
            raise Internal("An error occurred with Firebase Authentication.") from e
        if existing:
            logger.info(f"User with phone {phone} already exists. UID: {existing.uid}")
            return IdentityClaim(existing, created=False)

        try:
            created = await self._create_identity(phone, display_name)
        except PhoneAlreadyRegistered:
            # Registered by someone else between the lookup and the create
            try:
                existing = await self._identity.lookup_by_phone(phone)
            except IdentityServiceError as e:
                raise AlreadyExists("This phone number is already registered as a user.") from e
            logger.info(f"User with phone {phone} appeared during approval. UID: {existing.uid}")
            return IdentityClaim(existing, created=False)
        except IdentityServiceError as e:
            logger.error(f"Error creating user for {phone}: {e}")
            raise Internal("Error creating user account.") from e

        logger.info(f"Created new user for phone {phone}. UID: {created.uid}")
        return IdentityClaim(created, created=True)

    async def _create_identity(self, phone: str, display_name: Optional[str]) -> Identity:
        """Create the identity; if the deadline cancels the wait, undo whatever it still creates."""
        create = asyncio.ensure_future(self._identity.create_identity(phone, display_name))
        try:
            return await asyncio.shield(create)
        except asyncio.CancelledError:
            # The Admin SDK call keeps running in its worker thread
            await asyncio.wait([create])
            if not create.cancelled() and create.exception() is None:
                await self._compensate(create.result().uid)
            raise

    async def _compensate(self, uid: str):
        try:
            # A concurrent approval may have reused this identity and committed
            if await self._store.get(LISTENERS, uid) is not None:
                logger.warning(f"Auth user {uid} is in use by a listener profile; not deleting it.")
                return
            logger.warning(f"Cleaning up orphaned auth user {uid} due to a failed profile creation.")
            await self._identity.delete_identity(uid)
        except Exception as e:
            logger.error(f"Failed to delete orphaned auth user {uid}: {e!r}")

    # ─── REJECT ────────────────────────────────────────
    async def reject_application(self, application_id: Optional[str], requesting_admin_id: Optional[str],
                                 reason: Optional[str] = None):
        await self._with_deadline(
            self._reject(application_id, requesting_admin_id, reason),
            f"rejecting application {application_id}",
        )

    async def _reject(self, application_id, requesting_admin_id, reason):
        await self.ensure_admin(requesting_admin_id)
        await self._load_pending(application_id)
        updated = await self._store.update(
            APPLICATIONS, application_id,
            {
                "status": REJECTED,
                "reason": (reason or "").strip() or DEFAULT_REJECT_REASON,
                "rejectedBy": requesting_admin_id,
                "rejectedAt": now(),
            },
            expected={"status": PENDING},
        )
        if not updated:
            raise FailedPrecondition("Application is not in a pending state and cannot be rejected.")
        logger.info(f"Application {application_id} was rejected by {requesting_admin_id}.")

    # ─── SUBMISSION & ADMIN QUEUE ──────────────────────
    async def submit_application(self, data: dict) -> str:
        """Store a new pending application after validation and duplicate checks."""
        phone = (data.get("phone") or "").strip()
        if not LOCAL_PHONE.match(phone):
            raise InvalidArgument("A valid 10-digit phone number is required.")
        required = ("fullName", "displayName", "profession")
        if any(not (data.get(k) or "").strip() for k in required):
            raise InvalidArgument("Missing required application fields.")
        languages = data.get("languages")
        if not isinstance(languages, list) or not languages:
            raise InvalidArgument("Please choose at least one language.")
        has_bank = all(data.get(k) for k in ("bankAccount", "ifsc", "bankName"))
        if not has_bank and not data.get("upiId"):
            raise InvalidArgument("Either bank details or a UPI ID must be provided.")

        normalized = normalize_phone(phone, self._country_code)
        existing_apps = await self._store.find(
            APPLICATIONS,
            {"phone": {"$in": [normalized, phone]}, "status": {"$in": [PENDING, APPROVED]}},
            limit=1,
        )
        if existing_apps:
            logger.warning(f"Duplicate application submission for phone: {normalized}")
            raise AlreadyExists("An application with this phone number has already been submitted.")
        if await self._store.count(LISTENERS, {"phone": normalized}):
            logger.warning(f"Application submitted for an existing listener's phone: {normalized}")
            raise AlreadyExists("An account with this phone number already exists.")

        application_id = await self._store.insert(APPLICATIONS, {
            "fullName": data["fullName"].strip(),
            "displayName": data["displayName"].strip(),
            "phone": normalized,
            "profession": data["profession"].strip(),
            "languages": languages,
            "bankAccount": data.get("bankAccount") or None,
            "ifsc": data.get("ifsc") or None,
            "bankName": data.get("bankName") or None,
            "upiId": data.get("upiId") or None,
            "status": PENDING,
            "createdAt": now(),
        })
        logger.info(f"Successfully created new application {application_id} for phone: {normalized}")
        return application_id

    async def list_applications(self, requesting_admin_id: Optional[str], status: str = PENDING) -> list:
        await self.ensure_admin(requesting_admin_id)
        if status not in APPLICATION_STATUSES:
            raise InvalidArgument(f"Status must be one of {APPLICATION_STATUSES}.")
        return await self._store.find(APPLICATIONS, {"status": status}, limit=100, sort=("createdAt", 1))

    async def set_admin_role(self, requesting_admin_id: Optional[str], target_uid: Optional[str]):
        await self.ensure_admin(requesting_admin_id)
        if not target_uid or not isinstance(target_uid, str):
            raise InvalidArgument("The function must be called with a 'targetUid' string.")
        if not await self._store.get(LISTENERS, target_uid):
            raise NotFound(f"Listener {target_uid} not found.")
        try:
            await self._identity.grant_admin(target_uid)
        except IdentityNotFound:
            raise NotFound(f"User {target_uid} not found.")
        except IdentityServiceError as e:
            logger.error(f"Error setting admin role for {target_uid}: {e}")
            raise Internal("An unexpected error occurred while setting the admin role.") from e
        await self._store.update(LISTENERS, target_uid, {"isAdmin": True})
        logger.info(f"User {target_uid} has been made an admin by {requesting_admin_id}.")
