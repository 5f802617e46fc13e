from fastapi import FastAPI, APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pydantic import BaseModel
from typing import List, Optional
import jwt
from datetime import datetime, timezone, timedelta

from config import Settings, load_settings, setup_logging
from earnings import EarningsLedger, load_pricing_policy, rate_card
from errors import ServiceError, Unauthenticated
from identity import FirebaseIdentityService, IdentityServiceError, init_firebase
from onboarding import OnboardingWatcher
from provisioning import PENDING, ProvisioningWorkflow
from store import MongoDocumentStore
from triggers import start_triggers, stop_triggers

security = HTTPBearer(auto_error=False)

app = FastAPI()
api_router = APIRouter(prefix="/api")

setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
logger = logging.getLogger(__name__)

# ─── MODELS ────────────────────────────────────────────
class FirebaseAuthRequest(BaseModel):
    firebase_token: str

class ApplicationSubmission(BaseModel):
    # Optional so the workflow reports what is missing
    fullName: Optional[str] = None
    displayName: Optional[str] = None
    phone: Optional[str] = None
    profession: Optional[str] = None
    languages: Optional[List[str]] = None
    bankAccount: Optional[str] = None
    ifsc: Optional[str] = None
    bankName: Optional[str] = None
    upiId: Optional[str] = None

class RejectRequest(BaseModel):
    reason: Optional[str] = None

class SetAdminRoleRequest(BaseModel):
    target_uid: Optional[str] = None

# ─── DEPENDENCIES ──────────────────────────────────────
def get_settings(request: Request) -> Settings:
    return request.app.state.settings

def get_workflow(request: Request) -> ProvisioningWorkflow:
    return request.app.state.workflow

def get_ledger(request: Request) -> EarningsLedger:
    return request.app.state.ledger

def get_identity(request: Request) -> FirebaseIdentityService:
    return request.app.state.identity

# ─── HELPERS ───────────────────────────────────────────
def create_token(user_id: str, role: str, settings: Settings) -> str:
    payload = {
        "user_id": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.jwt_expiry_days)
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                           settings: Settings = Depends(get_settings)):
    if not credentials:
        raise Unauthenticated("Not authenticated")
    return decode_token(credentials.credentials, settings)

async def get_optional_user_id(credentials: HTTPAuthorizationCredentials = Depends(security),
                               settings: Settings = Depends(get_settings)) -> Optional[str]:
    """Admin routes let the workflow report a missing caller itself."""
    if not credentials:
        return None
    return decode_token(credentials.credentials, settings)["user_id"]

def build_services(settings: Settings, store, identity) -> dict:
    policy = load_pricing_policy(settings.pricing_policy_file)
    return {
        "workflow": ProvisioningWorkflow(
            store, identity,
            country_code=settings.phone_country_code,
            timeout=settings.workflow_timeout,
        ),
        "ledger": EarningsLedger(store, policy),
        "watcher": OnboardingWatcher(store, settings.onboarding_complete_status),
    }

# ─── AUTH ──────────────────────────────────────────────
@api_router.post("/auth/firebase-verify")
async def firebase_verify(req: FirebaseAuthRequest, identity=Depends(get_identity),
                          settings: Settings = Depends(get_settings)):
    """Verify a Firebase ID token from phone OTP auth and return an app JWT."""
    try:
        decoded = await identity.verify_token(req.firebase_token)
    except IdentityServiceError as e:
        logger.warning(f"Firebase token verification failed: {e}")
        raise Unauthenticated("Invalid or expired Firebase token")
    role = "admin" if decoded.get("admin") is True else "listener"
    token = create_token(decoded["uid"], role, settings)
    return {"success": True, "token": token, "uid": decoded["uid"], "role": role}

# ─── APPLICATIONS ──────────────────────────────────────
@api_router.post("/applications")
async def submit_application(req: ApplicationSubmission, workflow=Depends(get_workflow)):
    application_id = await workflow.submit_application(req.model_dump())
    return {"success": True, "applicationId": application_id, "message": "Application submitted successfully."}

# ─── ADMIN ─────────────────────────────────────────────
@api_router.get("/admin/applications")
async def list_applications(status: str = PENDING, admin_id=Depends(get_optional_user_id),
                            workflow=Depends(get_workflow)):
    applications = await workflow.list_applications(admin_id, status)
    return {"applications": applications}

@api_router.post("/admin/applications/{application_id}/approve")
async def approve_application(application_id: str, admin_id=Depends(get_optional_user_id),
                              workflow=Depends(get_workflow)):
    listener = await workflow.approve_application(application_id, admin_id)
    return {"success": True, "message": "Application approved successfully.", "listener": listener}

@api_router.post("/admin/applications/{application_id}/reject")
async def reject_application(application_id: str, req: Optional[RejectRequest] = None,
                             admin_id=Depends(get_optional_user_id), workflow=Depends(get_workflow)):
    await workflow.reject_application(application_id, admin_id, req.reason if req else None)
    return {"success": True, "message": "Application rejected successfully."}

@api_router.post("/admin/set-admin-role")
async def set_admin_role(req: SetAdminRoleRequest, admin_id=Depends(get_optional_user_id),
                         workflow=Depends(get_workflow)):
    await workflow.set_admin_role(admin_id, req.target_uid)
    return {"success": True, "message": f"User {req.target_uid} has been successfully made an admin."}

@api_router.get("/admin/dashboard")
async def admin_dashboard(admin_id=Depends(get_optional_user_id), workflow=Depends(get_workflow),
                          ledger=Depends(get_ledger)):
    await workflow.ensure_admin(admin_id)
    return await ledger.platform_summary()

# ─── EARNINGS ──────────────────────────────────────────
@api_router.get("/earnings/dashboard")
async def earnings_dashboard(user=Depends(get_current_user), ledger=Depends(get_ledger)):
    return await ledger.listener_dashboard(user["user_id"])

@api_router.get("/rates")
async def get_rates(ledger=Depends(get_ledger)):
    return rate_card(ledger.policy)

# ─── ERRORS ────────────────────────────────────────────
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup():
    settings = load_settings()
    store = MongoDocumentStore(settings.mongo_url, settings.db_name)
    await store.ensure_indexes()
    init_firebase(settings.firebase_cred_path, settings.firebase_project_id)
    identity = FirebaseIdentityService()
    services = build_services(settings, store, identity)

    app.state.settings = settings
    app.state.store = store
    app.state.identity = identity
    app.state.workflow = services["workflow"]
    app.state.ledger = services["ledger"]
    app.state.trigger_tasks = []
    if settings.enable_triggers:
        app.state.trigger_tasks = start_triggers(store, services["ledger"], services["watcher"])
    logger.info("Listener API started")

@app.on_event("shutdown")
async def shutdown_db_client():
    await stop_triggers(app.state.trigger_tasks)
    app.state.store.close()
