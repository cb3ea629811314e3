"""
REST API routes for ClassGate.

Provides endpoints for device registration, token rotation and change
events, policy documents, agent and bootstrap distribution, enrollment,
and setup.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, StreamingResponse

from classgate import __version__
from classgate.api.auth import (
    check_auth_rate_limit,
    check_rate_limit,
    require_admin_role,
    require_bearer,
    require_device,
    require_enrollment,
    require_teacher,
)
from classgate.api.dependencies import (
    deps,
    get_catalog_store,
    get_config,
    get_delivery,
    get_events,
    get_issuer,
    get_registry,
)
from classgate.api.schemas import (
    HealthCheck,
    ManifestFile,
    ManifestResponse,
    RegisterResponse,
    RegistrationTokenResponse,
    RotateResponse,
    SetupStatus,
    TicketResponse,
    ValidateTokenResponse,
)
from classgate.config import ClassGateConfig
from classgate.delivery.etag import conditional_response
from classgate.delivery.events import DeviceEventStreamer
from classgate.delivery.manifest import DeliveryService, ManifestBuilder
from classgate.delivery.scripts import (
    POWERSHELL_MEDIA_TYPE,
    SHELL_MEDIA_TYPE,
    EnrollmentScriptContext,
    render_linux_script,
    render_windows_script,
)
from classgate.errors import (
    AuthInvalid,
    NotConfigured,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from classgate.policy.models import Classroom
from classgate.policy.parser import CatalogStore
from classgate.policy.resolver import PolicyDocument
from classgate.registry.database import DeviceRegistry, normalize_hostname
from classgate.registry.models import Device
from classgate.tokens.admin import AdminPrincipal
from classgate.tokens.issuer import (
    EnrollmentCheck,
    EnrollmentStatus,
    TokenIssuer,
    hash_device_token,
)

logger = logging.getLogger(__name__)

# Routes under /api
router = APIRouter(prefix="/api")

# Routes polled by agents and public exports
public_router = APIRouter()

MAX_HOSTNAME_LENGTH = 255

NO_STORE = "no-store, max-age=0"


# ============================================================================
# Helpers
# ============================================================================


async def _read_json_object(request: Request) -> dict[str, Any]:
    """Read the request body as a JSON object; anything else is empty."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _public_url(request: Request, config: ClassGateConfig) -> str:
    if config.server.public_url:
        return config.server.public_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def _whitelist_url(base_url: str, token: str) -> str:
    return f"{base_url}/w/{token}/whitelist.txt"


def _policy_response(document: PolicyDocument, if_none_match: str | None) -> Response:
    # Sentinel: no ETag, never cached
    if document.sentinel:
        return PlainTextResponse(document.body, headers={"Cache-Control": "no-store"})
    return conditional_response(document.body, if_none_match)


def _manifest_response(builder: ManifestBuilder, if_none_match: str | None) -> Response:
    manifest = builder.build()
    body = ManifestResponse(
        version=manifest.version,
        files=[ManifestFile(path=f.path, sha256=f.sha256, size=f.size) for f in manifest.files],
    ).model_dump_json(by_alias=True)
    return conditional_response(body, if_none_match, media_type="application/json")


def _file_response(builder: ManifestBuilder, path: str | None) -> Response:
    if not path:
        raise ValidationFailed("path query parameter required")
    entry, content = builder.read_file(path)
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={
            "X-Content-SHA256": entry.sha256,
            "ETag": f'"{entry.sha256}"',
            "Cache-Control": "no-cache",
        },
    )


def _enrollment_classroom(
    classroom_id: str,
    token: str,
    issuer: TokenIssuer,
    catalog_store: CatalogStore,
) -> Classroom:
    check = issuer.verify_enrollment_token(token, classroom_id)
    if check.status == EnrollmentStatus.INVALID:
        raise AuthInvalid("Invalid enrollment token")
    if check.status == EnrollmentStatus.SCOPE_MISMATCH:
        raise PermissionDenied("Enrollment token does not match classroom")

    classroom = catalog_store.catalog.get_classroom(classroom_id)
    if classroom is None:
        raise NotFound("Classroom not found")
    return classroom


def _script_headers(filename: str) -> dict[str, str]:
    return {
        "Cache-Control": NO_STORE,
        "Pragma": "no-cache",
        "X-Content-Type-Options": "nosniff",
        "Content-Disposition": f'inline; filename="{filename}"',
    }


# ============================================================================
# Health Check Endpoints
# ============================================================================


@public_router.get("/health", response_model=HealthCheck, tags=["Health"])
async def health_check() -> HealthCheck:
    """Check service health."""
    return HealthCheck(version=__version__, uptime_seconds=time.time() - deps.start_time)


# ============================================================================
# Policy Endpoints
# ============================================================================


@public_router.get("/w/whitelist.txt", tags=["Policy"])
def whitelist_without_token() -> Response:
    """Whitelist URL with the token segment missing: deny-all document."""
    return _policy_response(PolicyDocument.deny_all(), None)


@public_router.get("/w/{token}/whitelist.txt", tags=["Policy"])
def tokenized_whitelist(
    token: str,
    if_none_match: str | None = Header(None),
) -> Response:
    """
    Serve the policy document for the device holding ``token``.

    Always answers 200 (or 304); an unidentifiable device gets the
    deny-all document.
    """
    if deps.resolver is None:
        logger.error("Whitelist requested before services were configured")
        return _policy_response(PolicyDocument.deny_all(), None)
    return _policy_response(deps.resolver.resolve_whitelist(token), if_none_match)


@public_router.get("/export/{name}.txt", tags=["Policy"])
def export_group(
    name: str,
    if_none_match: str | None = Header(None),
) -> Response:
    """Serve the public export of a group by name."""
    if deps.resolver is None:
        logger.error("Export requested before services were configured")
        return _policy_response(PolicyDocument.deny_all(), None)

    document = deps.resolver.export_group(name)
    if document is None:
        raise NotFound("Group not found")
    return _policy_response(document, if_none_match)


# ============================================================================
# Machine Endpoints
# ============================================================================


@router.post(
    "/machines/register",
    response_model=RegisterResponse,
    dependencies=[Depends(check_rate_limit)],
    tags=["Machines"],
)
async def register_machine(
    request: Request,
    token: str = Depends(require_bearer),
    issuer: TokenIssuer = Depends(get_issuer),
    registry: DeviceRegistry = Depends(get_registry),
    catalog_store: CatalogStore = Depends(get_catalog_store),
    config: ClassGateConfig = Depends(get_config),
) -> RegisterResponse:
    """
    Register a device, or refresh an existing registration.

    Accepts either an enrollment ticket (classroom taken from the ticket)
    or the installation's registration token (classroom by name). A
    device registering again gets its current whitelist URL back.
    """
    enrollment = issuer.verify_enrollment_token(token)
    if not enrollment.ok and not issuer.validate_registration_token(token):
        raise PermissionDenied("Invalid registration token")

    body = await _read_json_object(request)

    hostname = body.get("hostname")
    if not isinstance(hostname, str) or not hostname.strip():
        raise ValidationFailed("hostname is required")
    hostname = normalize_hostname(hostname)
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValidationFailed("hostname is too long")

    version = body.get("version")
    if not isinstance(version, str) or not version.strip():
        version = None

    catalog = catalog_store.catalog
    if enrollment.ok:
        requested_id = body.get("classroomId")
        if requested_id and requested_id != enrollment.classroom_id:
            raise PermissionDenied("Enrollment token does not match classroom")
        classroom = catalog.get_classroom(enrollment.classroom_id)
        if classroom is None:
            raise NotFound("Classroom not found")
    else:
        classroom_name = body.get("classroomName")
        if not isinstance(classroom_name, str) or not classroom_name:
            raise ValidationFailed("classroomName is required")
        classroom = catalog.get_classroom_by_name(classroom_name)
        if classroom is None:
            raise NotFound(f'Classroom "{classroom_name}" not found')

    credential = issuer.issue_device_token()
    device, created = registry.upsert_device(
        hostname,
        classroom.id,
        credential.nonce,
        credential.token_hash,
        version=version,
    )
    device_token = credential.token if created else issuer.derive_device_token(device.token_nonce)

    return RegisterResponse(
        whitelist_url=_whitelist_url(_public_url(request, config), device_token),
        classroom_name=classroom.name,
        classroom_id=classroom.id,
    )


@router.post(
    "/machines/{hostname}/rotate-download-token",
    response_model=RotateResponse,
    dependencies=[Depends(check_auth_rate_limit)],
    tags=["Machines"],
)
def rotate_download_token(
    hostname: str,
    request: Request,
    secret: str = Depends(require_bearer),
    issuer: TokenIssuer = Depends(get_issuer),
    registry: DeviceRegistry = Depends(get_registry),
    config: ClassGateConfig = Depends(get_config),
) -> RotateResponse:
    """
    Replace a device's download token.

    The previous whitelist URL stops resolving as soon as this returns.
    """
    if not issuer.shared_secret_configured:
        raise NotConfigured("Shared secret not configured")
    if not issuer.validate_shared_secret(secret):
        raise PermissionDenied("Invalid shared secret")

    credential = issuer.issue_device_token()
    device = registry.rotate_token(hostname, credential.nonce, credential.token_hash)
    if device is None:
        raise NotFound(f'Machine "{hostname}" not found')

    return RotateResponse(whitelist_url=_whitelist_url(_public_url(request, config), credential.token))


@router.get(
    "/machines/events",
    dependencies=[Depends(check_rate_limit)],
    tags=["Machines"],
)
async def machine_events(
    token: str = Depends(require_bearer),
    events: DeviceEventStreamer = Depends(get_events),
) -> StreamingResponse:
    """
    Stream ``whitelist-changed`` events to a registered device.

    Authenticated with the same token as the whitelist URL; the stream
    closes once that token is rotated away.
    """
    token_hash = hash_device_token(token)
    state = await run_in_threadpool(events.snapshot, token_hash)
    if state is None:
        raise PermissionDenied("Invalid machine token")
    if state.group_id is None:
        raise NotFound("No active group for this machine")

    await run_in_threadpool(events.registry.touch_last_seen, state.hostname)

    return StreamingResponse(
        events.stream(token_hash, state),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ============================================================================
# Agent Distribution Endpoints
# ============================================================================


@router.get(
    "/agent/windows/latest.json",
    dependencies=[Depends(check_rate_limit)],
    tags=["Agent"],
)
def agent_manifest(
    if_none_match: str | None = Header(None),
    device: Device = Depends(require_device),
    delivery: DeliveryService = Depends(get_delivery),
) -> Response:
    """Get the manifest of the current agent release."""
    return _manifest_response(delivery.agent, if_none_match)


@router.get(
    "/agent/windows/file",
    dependencies=[Depends(check_rate_limit)],
    tags=["Agent"],
)
def agent_file(
    path: str | None = Query(None),
    device: Device = Depends(require_device),
    delivery: DeliveryService = Depends(get_delivery),
) -> Response:
    """Download one file listed in the agent manifest."""
    return _file_response(delivery.agent, path)


@router.get(
    "/agent/windows/bootstrap/latest.json",
    dependencies=[Depends(check_rate_limit)],
    tags=["Agent"],
)
def bootstrap_manifest(
    if_none_match: str | None = Header(None),
    enrollment: EnrollmentCheck = Depends(require_enrollment),
    delivery: DeliveryService = Depends(get_delivery),
) -> Response:
    """Get the manifest of the bootstrap installer."""
    return _manifest_response(delivery.bootstrap, if_none_match)


@router.get(
    "/agent/windows/bootstrap/file",
    dependencies=[Depends(check_rate_limit)],
    tags=["Agent"],
)
def bootstrap_file(
    path: str | None = Query(None),
    enrollment: EnrollmentCheck = Depends(require_enrollment),
    delivery: DeliveryService = Depends(get_delivery),
) -> Response:
    """Download one file listed in the bootstrap manifest."""
    return _file_response(delivery.bootstrap, path)


# ============================================================================
# Enrollment Endpoints
# ============================================================================


@router.post(
    "/enroll/{classroom_id}/ticket",
    response_model=TicketResponse,
    dependencies=[Depends(check_auth_rate_limit)],
    tags=["Enrollment"],
)
def issue_ticket(
    classroom_id: str,
    response: Response,
    principal: AdminPrincipal = Depends(require_teacher),
    issuer: TokenIssuer = Depends(get_issuer),
    catalog_store: CatalogStore = Depends(get_catalog_store),
) -> TicketResponse:
    """Issue a short-lived enrollment ticket for a classroom."""
    classroom = catalog_store.catalog.get_classroom(classroom_id)
    if classroom is None:
        raise NotFound("Classroom not found")

    ticket = issuer.issue_enrollment_ticket(classroom.id, principal)
    response.headers["Cache-Control"] = NO_STORE

    return TicketResponse(
        enrollment_token=ticket.token,
        classroom_id=classroom.id,
        classroom_name=classroom.name,
        expires_at=ticket.expires_at,
    )


@router.get(
    "/enroll/{classroom_id}/windows.ps1",
    dependencies=[Depends(check_rate_limit)],
    tags=["Enrollment"],
)
def windows_enrollment_script(
    classroom_id: str,
    request: Request,
    token: str = Depends(require_bearer),
    issuer: TokenIssuer = Depends(get_issuer),
    catalog_store: CatalogStore = Depends(get_catalog_store),
    config: ClassGateConfig = Depends(get_config),
) -> Response:
    """Get the PowerShell enrollment script for a classroom."""
    classroom = _enrollment_classroom(classroom_id, token, issuer, catalog_store)
    script = render_windows_script(
        EnrollmentScriptContext(
            api_url=_public_url(request, config),
            classroom_id=classroom.id,
            classroom_name=classroom.name,
            enrollment_token=token,
        )
    )
    return Response(
        content=script,
        media_type=POWERSHELL_MEDIA_TYPE,
        headers=_script_headers("enroll.ps1"),
    )


@router.get(
    "/enroll/{classroom_id}",
    dependencies=[Depends(check_rate_limit)],
    tags=["Enrollment"],
)
def linux_enrollment_script(
    classroom_id: str,
    request: Request,
    token: str = Depends(require_bearer),
    issuer: TokenIssuer = Depends(get_issuer),
    catalog_store: CatalogStore = Depends(get_catalog_store),
    config: ClassGateConfig = Depends(get_config),
) -> Response:
    """Get the bash enrollment script for a classroom."""
    classroom = _enrollment_classroom(classroom_id, token, issuer, catalog_store)
    script = render_linux_script(
        EnrollmentScriptContext(
            api_url=_public_url(request, config),
            classroom_id=classroom.id,
            classroom_name=classroom.name,
            enrollment_token=token,
        )
    )
    return Response(
        content=script,
        media_type=SHELL_MEDIA_TYPE,
        headers=_script_headers("enroll.sh"),
    )


# ============================================================================
# Setup Endpoints
# ============================================================================


@router.get("/setup/status", response_model=SetupStatus, tags=["Setup"])
def setup_status(issuer: TokenIssuer = Depends(get_issuer)) -> SetupStatus:
    """Check whether the installation has a registration token."""
    return SetupStatus(has_registration_token=issuer.has_registration_token())


@router.get(
    "/setup/registration-token",
    response_model=RegistrationTokenResponse,
    dependencies=[Depends(check_auth_rate_limit)],
    tags=["Setup"],
)
def get_registration_token(
    response: Response,
    principal: AdminPrincipal = Depends(require_admin_role),
    issuer: TokenIssuer = Depends(get_issuer),
) -> RegistrationTokenResponse:
    """Get the registration token, creating it on first use."""
    token = issuer.bootstrap_registration_token()
    response.headers["Cache-Control"] = NO_STORE
    return RegistrationTokenResponse(registration_token=token)


@router.post(
    "/setup/regenerate-token",
    response_model=RegistrationTokenResponse,
    dependencies=[Depends(check_auth_rate_limit)],
    tags=["Setup"],
)
def regenerate_registration_token(
    response: Response,
    principal: AdminPrincipal = Depends(require_admin_role),
    issuer: TokenIssuer = Depends(get_issuer),
) -> RegistrationTokenResponse:
    """Replace the registration token; the previous one stops working."""
    token = issuer.regenerate_registration_token()
    logger.warning("Registration token regenerated by %s", principal.subject)
    response.headers["Cache-Control"] = NO_STORE
    return RegistrationTokenResponse(registration_token=token)


@router.post(
    "/setup/validate-token",
    response_model=ValidateTokenResponse,
    dependencies=[Depends(check_rate_limit)],
    tags=["Setup"],
)
async def validate_registration_token(
    request: Request,
    issuer: TokenIssuer = Depends(get_issuer),
) -> ValidateTokenResponse:
    """Check a candidate registration token. Always answers 200."""
    body = await _read_json_object(request)
    token = body.get("token")
    if not isinstance(token, str):
        return ValidateTokenResponse(valid=False)
    return ValidateTokenResponse(valid=issuer.validate_registration_token(token))
