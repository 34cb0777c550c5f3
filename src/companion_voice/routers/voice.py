import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from companion_voice.config import Settings
from companion_voice.schemas.messages import classify_frame
from companion_voice.services.auth import AuthenticationError, resolve_user_id
from companion_voice.services.session import Session, SessionRegistry, new_session_id
from companion_voice.services.voice_pipeline import VoicePipeline

router = APIRouter(tags=["Voice"])
logger = logging.getLogger(__name__)

# Application-defined close code for rejected credentials
WS_CLOSE_UNAUTHORIZED = 4401


async def handle_connection(
    websocket: WebSocket,
    *,
    settings: Settings,
    registry: SessionRegistry,
    services,
    voice: Optional[str],
    language: Optional[str],
    token: Optional[str],
    client_id: Optional[str],
) -> None:
    """
    Main loop for a single client's voice connection.

    Binary frames are microphone audio, text frames are JSON control messages.
    Whatever ends the loop, the session is torn down exactly once.
    """
    await websocket.accept()

    secret = (
        settings.access_token_secret.get_secret_value()
        if settings.access_token_secret
        else None
    )
    try:
        user_id = resolve_user_id(token, secret)
    except AuthenticationError as e:
        logger.warning(f"Rejecting voice connection: {e}")
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return

    session = Session(
        session_id=new_session_id(),
        connection=websocket,
        voice=services.synthesizer.resolve_voice(voice),
        language=language or settings.default_language,
        user_id=user_id,
        client_id=client_id,
    )
    pipeline = VoicePipeline(
        session,
        bridge=services.recognizer,
        generator=services.generator,
        synthesizer=services.synthesizer,
        settings=settings,
        registry=registry,
        repository=services.repository,
    )
    registry.add(session)

    try:
        await session.send(
            {
                "type": "connected",
                "sessionId": session.session_id,
                "clientId": client_id or session.session_id,
            }
        )
        await pipeline.start()

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"Client {session.session_id} disconnected")
                break

            data = message.get("bytes")
            text = message.get("text")
            if data is not None:
                control = classify_frame(data, min_chunk_bytes=settings.min_chunk_bytes)
                if control is not None:
                    await pipeline.handle_control(control)
                else:
                    pipeline.handle_audio(data)
            elif text is not None:
                await pipeline.handle_control(text)

    except WebSocketDisconnect:
        logger.info(f"Client {session.session_id} disconnected")
    except Exception as e:
        logger.error(f"Unexpected error for {session.session_id}: {e}", exc_info=True)
    finally:
        await pipeline.close()


@router.websocket("/ws/stt")
async def voice_connect(websocket: WebSocket):
    app_state = websocket.app.state

    if not hasattr(app_state, "services"):
        logger.error("Voice services not initialized")
        await websocket.close(code=1011, reason="Server not ready")
        return

    params = websocket.query_params
    await handle_connection(
        websocket,
        settings=app_state.settings,
        registry=app_state.session_registry,
        services=app_state.services,
        voice=params.get("voice"),
        language=params.get("language"),
        token=params.get("token"),
        client_id=params.get("clientId") or params.get("client_id"),
    )


__all__ = ["WS_CLOSE_UNAUTHORIZED", "handle_connection", "router"]
