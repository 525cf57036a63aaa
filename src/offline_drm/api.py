from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .errors import AuthenticationRequired, OfflineDRMError, ValidationError
from .service import OfflineResourceService

LOGGER = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


class ResourceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_location: str = Field(alias="sourceLocation")
    media_type: str = Field(alias="mediaType")
    title: str
    course_tag: Optional[Union[str, int]] = Field(default=None, alias="courseTag")
    module_tag: Optional[Union[str, int]] = Field(default=None, alias="moduleTag")


def _tag(value: Optional[Union[str, int]]) -> Optional[str]:
    return None if value is None else str(value)


def create_app(service: OfflineResourceService) -> FastAPI:
    """Build the HTTP API around a service instance.

    Caller identity is read from the `X-User-Id` header, which the upstream
    authentication layer sets after verifying the session.
    """
    app = FastAPI(title="offline-drm")
    app.state.service = service

    @app.exception_handler(OfflineDRMError)
    async def _offline_error(request: Request, exc: OfflineDRMError) -> JSONResponse:
        if exc.status >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.detail or exc.message)
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg", "invalid")}
            for err in exc.errors()
        ]
        error = ValidationError(errors)
        return JSONResponse(status_code=error.status, content=error.to_dict())

    def caller(user_id: Optional[str]) -> str:
        if not user_id:
            raise AuthenticationRequired()
        return user_id

    @app.post("/api/offline-resources/request", status_code=201)
    def request_resource(req: ResourceRequest, x_user_id: Optional[str] = Header(default=None)):
        grant = service.request_resource(
            caller(x_user_id),
            req.source_location,
            req.media_type,
            req.title,
            _tag(req.course_tag),
            _tag(req.module_tag),
        )
        body = grant.to_dict()
        if not grant.created:
            return JSONResponse(status_code=200, content=body)
        return body

    @app.get("/api/offline-resources/download/{token}")
    def download(token: str, x_user_id: Optional[str] = Header(default=None)) -> StreamingResponse:
        stream = service.fetch_content(token, caller(x_user_id))
        return StreamingResponse(
            stream.chunks,
            media_type="application/octet-stream",
            headers={"Content-Length": str(stream.size_bytes), "Cache-Control": "no-store"},
        )

    @app.get("/api/offline-resources")
    def list_resources(x_user_id: Optional[str] = Header(default=None)):
        return [summary.to_dict() for summary in service.list_resources(caller(x_user_id))]

    @app.get("/api/offline-resources/token/{resource_id}")
    def request_token(resource_id: str, x_user_id: Optional[str] = Header(default=None)):
        return {"token": service.request_token(resource_id, caller(x_user_id))}

    @app.post("/api/offline-resources/access/{resource_id}")
    def record_access(resource_id: str, x_user_id: Optional[str] = Header(default=None)):
        service.record_access(resource_id, caller(x_user_id))
        return {"message": "Access recorded"}

    @app.delete("/api/offline-resources/{resource_id}")
    def delete_resource(resource_id: str, x_user_id: Optional[str] = Header(default=None)):
        service.delete_resource(resource_id, caller(x_user_id))
        return {"message": "Resource deleted"}

    return app
