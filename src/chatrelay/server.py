import json
import logging
import os
import uuid
from typing import Any

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from typing_extensions import TypedDict

from .config import Settings, _env_var_as_bool
from .errors import ChatRelayError, ConnectionGone, InvalidRequest
from .gateway import WebSocketGateway
from .metrics import PROM_CONTENT_TYPE
from .service import ChatService
from .types import InboundRequest

logger = logging.getLogger(__name__)

WS_POLICY_VIOLATION = 4400
DEFAULT_USER_ID = "anonymous"


class _HealthResponse(TypedDict):
    status: str
    providers: list[str]
    models: list[str]


def _make_error_body(
    *,
    status_code: int,
    message: str,
    error_type: str,
    code: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "message": message,
        "type": error_type,
        "code": code or error_type,
    }
    return {"error": payload}


def _error_body_for(exc: ChatRelayError) -> dict[str, Any]:
    return _make_error_body(
        status_code=exc.status_code, message=exc.message, error_type=exc.error_type
    )


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts)


def _parse_frame(raw: str, session_id: str) -> InboundRequest:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidRequest(f"message is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise InvalidRequest("message must be a JSON object")
    data["sessionId"] = session_id
    try:
        return InboundRequest.model_validate(data)
    except ValidationError as exc:
        raise InvalidRequest(_format_validation_error(exc)) from exc


def create_app(
    settings: Settings | None = None,
    service: ChatService | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if service is None:
        service = ChatService.from_settings(settings, gateway=WebSocketGateway())
    gateway = service.gateway

    app = FastAPI(title="chat-relay")
    app.state.settings = settings
    app.state.service = service

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.on_event("shutdown")
    async def _close_service() -> None:
        await service.aclose()

    @app.get("/healthz")
    async def healthz() -> _HealthResponse:
        payload: _HealthResponse = {
            "status": "ok",
            "providers": sorted(service.router.providers),
            "models": service.router.models(),
        }
        return payload

    @app.get("/metrics")
    async def metrics_endpoint(req: Request) -> Response:
        return Response(service.metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)

    @app.post("/v1/messages")
    async def post_message(body: InboundRequest) -> JSONResponse:
        try:
            result = await service.dispatch(body)
        except ChatRelayError as exc:
            logger.info(
                "request.rejected session=%s type=%s detail=%s",
                body.session_id,
                exc.error_type,
                exc.message,
            )
            return JSONResponse(_error_body_for(exc), status_code=exc.status_code)
        return JSONResponse(result.to_payload(), status_code=result.status_code)

    async def _handle_frame(connection_id: str, raw: str, session_id: str) -> None:
        try:
            request = _parse_frame(raw, session_id)
            await service.dispatch(request)
        except ChatRelayError as exc:
            logger.info(
                "ws.rejected session=%s type=%s detail=%s", session_id, exc.error_type, exc.message
            )
            await _send_error(connection_id, _error_body_for(exc))
        except Exception:
            logger.exception("ws.dispatch_failed session=%s", session_id)
            await _send_error(
                connection_id,
                _make_error_body(
                    status_code=500, message="internal error", error_type="internal_error"
                ),
            )

    async def _send_error(connection_id: str, body: dict[str, Any]) -> None:
        try:
            await gateway.send(connection_id, body)
        except ConnectionGone as exc:
            logger.warning("ws.error_undeliverable connection=%s error=%s", connection_id, exc.message)

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        session_id: str | None = None,
        user_id: str = DEFAULT_USER_ID,
    ) -> None:
        if not session_id:
            await websocket.close(code=WS_POLICY_VIOLATION)
            return
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        gateway.register(connection_id, websocket)
        await service.register_connection(session_id, connection_id, user_id or DEFAULT_USER_ID)
        logger.info("ws.connected session=%s connection=%s", session_id, connection_id)
        try:
            while True:
                raw = await websocket.receive_text()
                # each frame runs on its own so a cancel can land mid-stream
                service.spawn(
                    _handle_frame(connection_id, raw, session_id),
                    name=f"ws:{connection_id}",
                )
        except WebSocketDisconnect:
            logger.info("ws.disconnected session=%s connection=%s", session_id, connection_id)
        finally:
            gateway.unregister(connection_id)
            await service.unregister_connection(session_id, connection_id)

    return app


def main() -> None:
    import uvicorn

    host = os.environ.get("CHATRELAY_HOST", "127.0.0.1")
    try:
        port = int(os.environ.get("CHATRELAY_PORT", "8000"))
    except ValueError:
        port = 8000
    uvicorn.run(
        "src.chatrelay.server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=_env_var_as_bool("CHATRELAY_RELOAD"),
    )


if __name__ == "__main__":
    main()
