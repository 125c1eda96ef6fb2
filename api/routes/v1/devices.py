"""
api/routes/v1/devices.py -- The caller's own device list.

Routes (requires auth; every route is scoped to the current user):
  GET    /api/v1/devices               -- devices the user has logged in from
  GET    /api/v1/devices/{device_id}   -- one device
  PATCH  /api/v1/devices/{device_id}   -- rename and/or set trust
  DELETE /api/v1/devices/{device_id}   -- deactivate (the row is kept for scoring)

A device id that belongs to another user is reported as 404, never 403.
IP addresses are masked in every response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.audit_route import AuditedRoute, audit_action
from api.models import DeviceListResponse, DevicePatchRequest, DeviceResponse, MessageResponse
from audit.models import AuditAction
from auth.dependencies import get_current_user
from auth.models import User
from devices.fingerprint import mask_ip
from devices.models import DeviceRecord
from devices.tracker import DeviceTracker

router = APIRouter(route_class=AuditedRoute)


def _device_to_response(device: DeviceRecord) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        device_name=device.device_name,
        device_type=device.device_type,
        browser=device.browser,
        operating_system=device.operating_system,
        ip_address=mask_ip(device.ip_address),
        is_active=device.is_active,
        is_trusted=device.is_trusted,
        last_used_at=device.last_used_at,
        created_at=device.created_at,
    )


@router.get("/devices", response_model=DeviceListResponse)
def list_devices(request: Request, current_user: User = Depends(get_current_user)) -> DeviceListResponse:
    tracker: DeviceTracker = request.app.state.device_tracker
    devices = tracker.list_devices(current_user.id)
    return DeviceListResponse(count=len(devices), devices=[_device_to_response(d) for d in devices])


@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(request: Request, device_id: int, current_user: User = Depends(get_current_user)) -> DeviceResponse:
    tracker: DeviceTracker = request.app.state.device_tracker
    return _device_to_response(tracker.get_device(current_user.id, device_id))


@router.patch(
    "/devices/{device_id}",
    response_model=DeviceResponse,
    dependencies=[Depends(audit_action(AuditAction.DEVICE_UPDATE))],
)
def update_device(
    request: Request,
    device_id: int,
    body: DevicePatchRequest,
    current_user: User = Depends(get_current_user),
) -> DeviceResponse:
    """Rename a device or change its trust flag. Trusting is audited as DEVICE_TRUST."""
    tracker: DeviceTracker = request.app.state.device_tracker
    device = tracker.update_device(
        current_user.id,
        device_id,
        device_name=body.device_name,
        is_trusted=body.is_trusted,
    )
    if body.is_trusted:
        request.state.audit_action = AuditAction.DEVICE_TRUST
    return _device_to_response(device)


@router.delete(
    "/devices/{device_id}",
    response_model=MessageResponse,
    dependencies=[Depends(audit_action(AuditAction.DEVICE_REMOVE))],
)
def remove_device(request: Request, device_id: int, current_user: User = Depends(get_current_user)) -> MessageResponse:
    tracker: DeviceTracker = request.app.state.device_tracker
    tracker.deactivate(current_user.id, device_id)
    return MessageResponse(message="Device removed.")
