"""
Write endpoints for the /now page.

The owner publishes updates and uploads images to their own repository; the owner
and guests leave comments on published updates. Every write is DPoP-signed with
the caller's session key, after the session has been refreshed when needed.

Responses:
    400: The request body is invalid
    401: No usable session
    403: A guest session where the owner is required
    502: The PDS rejected or failed the write
"""

from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, Optional
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dev.stevedylan.edge.app.config import (
    MetricsClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
)
from dev.stevedylan.edge.app.handlers.helpers import (
    SessionAccessException,
    SessionDescriptor,
    report_failure,
    require_session,
)
from dev.stevedylan.edge.atproto.pds import get_record
from dev.stevedylan.edge.atproto.repo import create_record, parse_at_uri, upload_blob
from dev.stevedylan.edge.errors import EdgeError

logger = logging.getLogger(__name__)

DOCUMENT_COLLECTION = "site.standard.document"
COMMENT_COLLECTION = "site.standard.document.comment"
MARKDOWN_CONTENT_TYPE = "site.standard.content.markdown"

MAX_TEXT_CONTENT = 10_000
MAX_UPLOAD_BYTES = 1024 * 1024
ALLOWED_IMAGE_TYPES = {"image/png", "image/jpeg", "image/webp", "image/gif"}


class PostRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=128)
    content: str = Field(min_length=1)
    path: Optional[str] = None
    cover_image: Optional[Dict[str, Any]] = Field(default=None, alias="coverImage")


class ReplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    parent_uri: str = Field(min_length=1, alias="parentUri")
    content: str = Field(min_length=1, max_length=3000)


def _json_error(cls, message: str) -> web.HTTPException:
    return cls(body=json.dumps({"error": message}), content_type="application/json")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_document_record(
    settings: Settings, post: PostRequest, published_at: Optional[str] = None
) -> Dict[str, Any]:
    """Build a ``site.standard.document`` record for an update on the publication."""
    record: Dict[str, Any] = {
        "$type": DOCUMENT_COLLECTION,
        "site": settings.publication_uri,
        "title": post.title,
        "content": {"$type": MARKDOWN_CONTENT_TYPE, "markdown": post.content},
        "textContent": post.content[:MAX_TEXT_CONTENT],
        "publishedAt": published_at or now_iso(),
    }
    if post.path:
        record["path"] = post.path if post.path.startswith("/") else f"/{post.path}"
    if post.cover_image is not None:
        record["coverImage"] = post.cover_image
    return record


def build_comment_record(
    parent: Dict[str, Any], content: str, created_at: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build a ``site.standard.document.comment`` record replying to ``parent``.

    ``parent`` is a ``getRecord`` response. A parent that is itself a comment
    passes its root along; otherwise the parent is the root of the thread.
    """
    parent_ref = {"uri": parent["uri"], "cid": parent["cid"]}

    root_ref = parent_ref
    value = parent.get("value")
    root = value.get("root") if isinstance(value, dict) else None
    if isinstance(root, dict) and "uri" in root and "cid" in root:
        root_ref = {"uri": root["uri"], "cid": root["cid"]}

    return {
        "$type": COMMENT_COLLECTION,
        "root": root_ref,
        "parent": parent_ref,
        "content": content,
        "createdAt": created_at or now_iso(),
    }


async def _load_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise _json_error(web.HTTPBadRequest, "Request body must be JSON")
    if not isinstance(body, dict):
        raise _json_error(web.HTTPBadRequest, "Request body must be a JSON object")
    return body


async def _session_for(request: web.Request, allow_guest: bool) -> SessionDescriptor:
    try:
        return await require_session(request, allow_guest)
    except SessionAccessException as e:
        raise e.as_http_exception()


async def _remember_nonce(
    request: web.Request, descriptor: SessionDescriptor, nonce: Optional[str]
) -> None:
    if nonce is not None and nonce != descriptor.session.dpop_nonce:
        await request.app[SessionStoreAppKey].update_nonce(descriptor.session_id, nonce)


async def handle_post(request: web.Request):
    """Publish an update to the owner's repository."""
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    descriptor = await _session_for(request, allow_guest=False)

    try:
        post = PostRequest.model_validate(await _load_json(request))
    except ValidationError as e:
        raise _json_error(web.HTTPBadRequest, f"Invalid post: {e.errors()[0]['msg']}")

    record = build_document_record(settings, post)

    try:
        created, nonce = await create_record(
            request.app[SessionAppKey],
            descriptor.pds_url,
            descriptor.session.did,
            DOCUMENT_COLLECTION,
            record,
            descriptor.session.access_token,
            descriptor.dpop_key,
            nonce=descriptor.session.dpop_nonce,
            timeout=settings.http_timeout,
            metrics_client=metrics_client,
        )
    except EdgeError as e:
        await report_failure(request, e, "Creating update failed")
        metrics_client.increment(
            "edge.now.write", 1, tag_dict={"kind": "post", "result": "failed"}
        )
        raise _json_error(web.HTTPBadGateway, "Failed to create post")

    await _remember_nonce(request, descriptor, nonce)
    metrics_client.increment(
        "edge.now.write", 1, tag_dict={"kind": "post", "result": "ok"}
    )
    return web.json_response(
        {"success": True, "uri": created["uri"], "cid": created["cid"]}
    )


async def handle_reply(request: web.Request):
    """
    Comment on a published update.

    The parent must be a record in the owner's repository. The comment is created
    in the caller's own repository, guest or owner.
    """
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    http_session = request.app[SessionAppKey]

    descriptor = await _session_for(request, allow_guest=True)

    try:
        reply = ReplyRequest.model_validate(await _load_json(request))
        repo, collection, rkey = parse_at_uri(reply.parent_uri)
    except (ValidationError, ValueError):
        raise _json_error(web.HTTPBadRequest, "Invalid reply")

    if repo != settings.allowed_did:
        raise _json_error(
            web.HTTPBadRequest, "Replies are only accepted on this site's records"
        )

    try:
        parent = await get_record(
            http_session, settings.pds_url, repo, collection, rkey, settings.http_timeout
        )
        created, nonce = await create_record(
            http_session,
            descriptor.pds_url,
            descriptor.session.did,
            COMMENT_COLLECTION,
            build_comment_record(parent, reply.content),
            descriptor.session.access_token,
            descriptor.dpop_key,
            nonce=descriptor.session.dpop_nonce,
            timeout=settings.http_timeout,
            metrics_client=metrics_client,
        )
    except EdgeError as e:
        await report_failure(request, e, "Creating comment failed")
        metrics_client.increment(
            "edge.now.write", 1, tag_dict={"kind": "reply", "result": "failed"}
        )
        raise _json_error(web.HTTPBadGateway, "Failed to create reply")

    await _remember_nonce(request, descriptor, nonce)
    metrics_client.increment(
        "edge.now.write", 1, tag_dict={"kind": "reply", "result": "ok"}
    )
    return web.json_response(
        {"success": True, "uri": created["uri"], "cid": created["cid"]}
    )


async def handle_upload(request: web.Request):
    """
    Upload an image for a post.

    Form Fields:
        file: PNG, JPEG, WebP or GIF image of at most 1 MiB

    Returns the blob reference to embed as ``coverImage`` and a URL it can be
    viewed at.
    """
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    descriptor = await _session_for(request, allow_guest=False)

    try:
        form = await request.post()
    except ValueError:
        raise _json_error(web.HTTPBadRequest, "Expected a multipart form")

    upload = form.get("file")
    if upload is None or isinstance(upload, str):
        raise _json_error(web.HTTPBadRequest, "No file provided")

    if upload.content_type not in ALLOWED_IMAGE_TYPES:
        raise _json_error(web.HTTPBadRequest, "Unsupported image type")

    data = upload.file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise _json_error(web.HTTPBadRequest, "Image is larger than 1MB")

    try:
        blob, nonce = await upload_blob(
            request.app[SessionAppKey],
            descriptor.pds_url,
            data,
            upload.content_type,
            descriptor.session.access_token,
            descriptor.dpop_key,
            nonce=descriptor.session.dpop_nonce,
            timeout=settings.http_timeout,
            metrics_client=metrics_client,
        )
    except EdgeError as e:
        await report_failure(request, e, "Uploading image failed")
        metrics_client.increment(
            "edge.now.write", 1, tag_dict={"kind": "upload", "result": "failed"}
        )
        raise _json_error(web.HTTPBadGateway, "Failed to upload image")

    await _remember_nonce(request, descriptor, nonce)
    metrics_client.increment(
        "edge.now.write", 1, tag_dict={"kind": "upload", "result": "ok"}
    )

    cid = blob.get("ref", {}).get("$link") if isinstance(blob.get("ref"), dict) else None
    blob_url = None
    if cid:
        blob_url = (
            f"{descriptor.pds_url}/xrpc/com.atproto.sync.getBlob?"
            f"did={descriptor.session.did}&cid={cid}"
        )
    return web.json_response({"blob": blob, "blobUrl": blob_url})
