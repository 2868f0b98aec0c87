# routers/webhooks.py — Webhook management and the incoming trigger endpoint
# A webhook's reference scopes it to the whole system (""), an org, a project
# or a branch. Outgoing webhooks fire on emitted events; incoming webhooks
# re-emit their triggers when called with the right token.
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import permissions
import validators
from auth import get_current_user, CurrentUser
from database import get_db_session
from errors import DataFormatError, NotFoundError, OperationError, PermissionDeniedError
from identifiers import create_id, parse_id
from models import Organization, Project, Branch, Webhook
from scopes import (
    QueryOptions, apply_common_update, check_body_id, check_unique, find_and_validate,
    public_extension, stamp_created,
)
from webhook_dispatch import decode_webhook_id, emit_event, encode_webhook_id, extract_token, verify_authority

logger = logging.getLogger("mbee.webhooks")

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])

Scope = Tuple[Optional[Organization], Optional[Project], Optional[Branch]]


# --- Schemas ---

class WebhookIn(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    triggers: Optional[List[str]] = None
    response: Optional[Dict[str, Any]] = None
    token: Optional[str] = None
    token_location: Optional[str] = None
    reference: Optional[str] = None
    custom: Optional[dict] = None
    archived: Optional[bool] = None


# --- Helpers ---

def _webhook_to_out(webhook: Webhook) -> dict:
    out = {
        "id": webhook.id,
        "name": webhook.name,
        "description": webhook.description,
        "type": webhook.type,
        "triggers": list(webhook.triggers or []),
        "reference": webhook.reference,
    }
    if webhook.type == "Outgoing":
        out["response"] = webhook.response
    else:
        encoded = encode_webhook_id(webhook.id)
        out["token_location"] = webhook.token_location
        out["encoded_id"] = encoded
        out["url"] = f"/api/webhooks/trigger/{encoded}"
    out.update(public_extension(webhook))
    return out


async def _load_reference(db: AsyncSession, reference: str, archived: bool = False) -> Scope:
    """Resolve a webhook reference to its org / project / branch records."""
    if not reference:
        return None, None, None
    parts = parse_id(reference)
    org = await find_and_validate(db, Organization, parts[0], archived)
    project = branch = None
    if len(parts) > 1:
        project = await find_and_validate(db, Project, create_id(*parts[:2]), archived)
    if len(parts) > 2:
        branch = await find_and_validate(db, Branch, reference, archived)
    return org, project, branch


async def _create_webhooks(items: List[WebhookIn], user: CurrentUser, db: AsyncSession) -> List[Webhook]:
    if not items:
        raise DataFormatError("No webhooks provided.", "warn")

    created = []
    for item in items:
        if item.id is not None:
            raise DataFormatError("Webhook ids are generated and cannot be provided.", "warn")
        reference = validators.validate_webhook_reference(item.reference or "")
        permissions.create_webhook(user, *await _load_reference(db, reference))

        response = validators.validate_webhook_response(item.response) if item.response is not None else None
        validators.validate_webhook_type(item.type, response, item.token, item.token_location)
        triggers = validators.validate_webhook_triggers(item.triggers or [])
        if item.custom is not None:
            validators.validate_custom(item.custom)

        webhook = Webhook(
            name=item.name or "",
            description=item.description or "",
            type=item.type,
            triggers=triggers,
            response=response,
            token=f"{user.id}:{item.token}" if item.token else None,
            token_location=item.token_location,
            reference=reference,
            custom=item.custom or {},
            archived=bool(item.archived),
        )
        stamp_created(webhook, user.id)
        db.add(webhook)
        created.append(webhook)

    await db.commit()
    logger.info("%s created %d webhook(s)", user.id, len(created))
    return created


async def _update_webhooks(items: List[WebhookIn], user: CurrentUser, db: AsyncSession) -> List[Webhook]:
    if not items:
        raise DataFormatError("No webhooks provided.", "warn")
    if any(i.id is None for i in items):
        raise DataFormatError("Webhook id is required to update a webhook.", "warn")
    ids = check_unique([i.id for i in items], "webhooks")

    result = await db.execute(select(Webhook).where(Webhook.id.in_(ids)))
    found = {w.id: w for w in result.scalars().all()}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"The following webhooks were not found: [{', '.join(missing)}].", "warn")

    for item in items:
        webhook = found[item.id]
        permissions.update_webhook(user, *await _load_reference(db, webhook.reference))
        if webhook.archived and item.archived is not False:
            raise OperationError(
                f"Webhook [{webhook.id}] is archived. It must first be unarchived before performing this operation.",
                "warn",
            )
        if item.type is not None:
            webhook.type = item.type
        if item.reference is not None:
            webhook.reference = item.reference

        if item.response is not None:
            if webhook.type != "Outgoing":
                raise DataFormatError("An incoming webhook cannot have a response field.", "warn")
            webhook.response = validators.validate_webhook_response(item.response)
        if item.token is not None or item.token_location is not None:
            if webhook.type != "Incoming":
                raise DataFormatError("An outgoing webhook cannot have a token or tokenLocation.", "warn")
            if item.token is not None:
                webhook.token = f"{user.id}:{item.token}"
            if item.token_location is not None:
                webhook.token_location = item.token_location
        if item.triggers is not None:
            webhook.triggers = validators.validate_webhook_triggers(item.triggers)
        if item.name is not None:
            webhook.name = item.name
        if item.description is not None:
            webhook.description = item.description
        if item.custom is not None:
            validators.validate_custom(item.custom)
        apply_common_update(webhook, item.model_dump(), user.id)

    await db.commit()
    return [found[i] for i in ids]


async def _delete_webhooks(ids: List[str], user: CurrentUser, db: AsyncSession) -> List[str]:
    if not ids or not all(isinstance(i, str) for i in ids):
        raise DataFormatError("Request body must be an array of webhook ids.", "warn")
    ids = check_unique(ids, "webhooks")

    result = await db.execute(select(Webhook).where(Webhook.id.in_(ids)))
    found = list(result.scalars().all())
    if not found:
        raise NotFoundError(f"The following webhooks were not found: [{', '.join(ids)}].", "warn")

    for webhook in found:
        permissions.delete_webhook(user, *await _load_reference(db, webhook.reference, archived=True))
        await db.delete(webhook)
    await db.commit()
    return [w.id for w in found]


# --- Endpoints ---

@router.post("/trigger/{encodedid}")
async def trigger_webhook(
    encodedid: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
):
    """Incoming webhook: verify the token and emit every trigger with the body"""
    webhook = await db.get(Webhook, decode_webhook_id(encodedid))
    if webhook is None:
        raise NotFoundError("Webhook not found.", "warn")
    if webhook.archived:
        raise PermissionDeniedError("The webhook is archived and cannot be triggered.", "warn")

    raw = await request.body()
    try:
        body = await request.json() if raw else {}
    except ValueError:
        raise DataFormatError("Webhook trigger body must be JSON.", "warn")

    verify_authority(webhook, extract_token(webhook.token_location, body, request.headers))
    for trigger in webhook.triggers or []:
        await emit_event(db, background_tasks, trigger, body)
    logger.info("Webhook %s triggered %d event(s)", webhook.id, len(webhook.triggers or []))
    return {"triggered": list(webhook.triggers or [])}


@router.get("")
async def list_webhooks(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
    ids: Optional[str] = Query(default=None),
    reference: Optional[str] = Query(default=None),
):
    """Webhooks the user can read, optionally limited to ?ids= or one ?reference="""
    stmt = select(Webhook)
    if ids:
        stmt = stmt.where(Webhook.id.in_([i.strip() for i in ids.split(",") if i.strip()]))
    if reference is not None:
        stmt = stmt.where(Webhook.reference == reference)
    result = await db.execute(options.apply(stmt, Webhook, paginate=False))

    scopes: Dict[str, Optional[Scope]] = {}
    readable = []
    for webhook in result.scalars().all():
        if webhook.reference not in scopes:
            try:
                scopes[webhook.reference] = await _load_reference(db, webhook.reference, archived=True)
            except NotFoundError:
                scopes[webhook.reference] = None
        scope = scopes[webhook.reference]
        if scope is not None and permissions.allowed(permissions.read_webhook, user, *scope):
            readable.append(webhook)
    return [options.select(_webhook_to_out(w)) for w in options.page(readable)]


@router.post("")
async def create_webhooks(
    background_tasks: BackgroundTasks,
    items: List[WebhookIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    out = [_webhook_to_out(w) for w in await _create_webhooks(items, user, db)]
    await emit_event(db, background_tasks, "webhooks-created", out)
    return out


@router.patch("")
async def update_webhooks(
    background_tasks: BackgroundTasks,
    items: List[WebhookIn] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    out = [_webhook_to_out(w) for w in await _update_webhooks(items, user, db)]
    await emit_event(db, background_tasks, "webhooks-updated", out)
    return out


@router.delete("")
async def delete_webhooks(
    background_tasks: BackgroundTasks,
    ids: List[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await _delete_webhooks(ids, user, db)
    await emit_event(db, background_tasks, "webhooks-deleted", deleted)
    return deleted


@router.get("/{webhookid}")
async def get_webhook(
    webhookid: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    options: QueryOptions = Depends(QueryOptions),
):
    webhook = await db.get(Webhook, webhookid)
    if webhook is None or (webhook.archived and not options.archived):
        raise NotFoundError(f"Webhook [{webhookid}] not found.", "warn")
    permissions.read_webhook(user, *await _load_reference(db, webhook.reference, archived=True))
    return options.select(_webhook_to_out(webhook))


@router.patch("/{webhookid}")
async def update_webhook(
    webhookid: str,
    background_tasks: BackgroundTasks,
    item: WebhookIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_body_id(webhookid, item.id)
    item.id = webhookid
    out = _webhook_to_out((await _update_webhooks([item], user, db))[0])
    await emit_event(db, background_tasks, "webhooks-updated", [out])
    return out


@router.delete("/{webhookid}")
async def delete_webhook(
    webhookid: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    deleted = await _delete_webhooks([webhookid], user, db)
    await emit_event(db, background_tasks, "webhooks-deleted", deleted)
    return deleted[0]
