"""
foundpoems/api/streams.py
Feed stream administration and public stream pages.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from foundpoems.core.admin_auth import AdminActor, require_admin
from foundpoems.features.streams.service import (
    create_stream,
    delete_stream,
    get_public_stream,
    join_stream,
    list_streams,
    preview_stream,
    update_stream,
)
from foundpoems.models.stream import CreateStreamRequest, JoinStreamRequest, UpdateStreamRequest

router = APIRouter(prefix="/api/admin/rss-streams", tags=["streams"])
public_router = APIRouter(prefix="/api/poem-streams", tags=["streams"])


@router.get("")
def list_streams_endpoint(
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
    actor: AdminActor = Depends(require_admin),
):
    return list_streams(limit=limit, cursor=cursor)


@router.post("/validate")
def validate_stream_endpoint(request: CreateStreamRequest, actor: AdminActor = Depends(require_admin)):
    """Fetch the feed and preview the session its newest item would spawn"""
    return preview_stream(request)


@router.post("", status_code=201)
def create_stream_endpoint(request: CreateStreamRequest, actor: AdminActor = Depends(require_admin)):
    stream = create_stream(request)
    return {"stream": stream.to_api()}


@router.patch("/{stream_id}")
def update_stream_endpoint(
    stream_id: str,
    request: UpdateStreamRequest,
    actor: AdminActor = Depends(require_admin),
):
    stream = update_stream(stream_id, request)
    return {"stream": stream.to_api()}


@router.delete("/{stream_id}")
def delete_stream_endpoint(stream_id: str, actor: AdminActor = Depends(require_admin)):
    delete_stream(stream_id)
    return {"message": "Stream deleted"}


@public_router.get("/{slug}")
def public_stream_endpoint(
    slug: str,
    limit: Optional[int] = Query(None),
    cursor: Optional[str] = Query(None),
):
    return get_public_stream(slug, limit=limit, cursor=cursor)


@public_router.post("/{slug}/join", status_code=201)
def join_stream_endpoint(slug: str, request: JoinStreamRequest):
    added = join_stream(slug, request.email)
    return {"message": "Joined stream collaborators list", "added": added}
