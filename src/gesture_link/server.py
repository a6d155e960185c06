"""Control server for a gesture-link session.

Exposes the controller's control surface over REST and accepts landmark
frames from an external pose estimator over a WebSocket:

    POST /api/connect               open the link to the peripheral
    POST /api/examples              add an example from the latest hand
    POST /api/train                 press / release hold-to-train
    POST /api/transmission/start    start sending to the peripheral
    POST /api/recording/start       record incoming frames for `gesture-link replay`
    WS   /ws/landmarks              {"landmarks": [[x, y, z], ...] | null}

Usage:
    gesture-link serve --config session.yml
    # or
    uvicorn gesture_link.server:app --port 8765
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from gesture_link import __version__
from gesture_link.config import SessionConfig
from gesture_link.controller import Mode, RecognitionController
from gesture_link.knn import ExampleStore
from gesture_link.protocol import ProtocolVariant
from gesture_link.recorder import LandmarkRecorder
from gesture_link.transport import Link, MemoryLink, TransportGateway, WebSocketLink

logger = logging.getLogger("gesture_link.server")

app = FastAPI(title="gesture-link", version=__version__)


# --- State ---

class SessionState:
    def __init__(self):
        self.controller: Optional[RecognitionController] = None
        self.frame_clients: set[WebSocket] = set()
        self.recorder = LandmarkRecorder()
        self.configure(SessionConfig())

    def configure(self, config: SessionConfig, link: Optional[Link] = None):
        """Build a fresh session around `config`."""
        if link is None:
            link = WebSocketLink(config.link_url) if config.link_url else MemoryLink()
        gateway = TransportGateway(link, min_interval=config.send_interval)
        self.controller = RecognitionController(
            store=ExampleStore(k=config.k),
            gateway=gateway,
            config=config,
        )
        return self.controller


state = SessionState()


# --- Request bodies ---

class ExampleRequest(BaseModel):
    label: str
    name: Optional[str] = None


class TrainRequest(BaseModel):
    active: bool
    label: Optional[str] = None


class ModeRequest(BaseModel):
    mode: str


class ProtocolRequest(BaseModel):
    variant: str


class FlipRequest(BaseModel):
    flip: bool


class ThresholdRequest(BaseModel):
    threshold: float


class RecordingRequest(BaseModel):
    path: str


def _controller() -> RecognitionController:
    return state.controller


# --- API endpoints ---

@app.get("/api/status")
async def api_status():
    status = _controller().status()
    status["frame_clients"] = len(state.frame_clients)
    return status


@app.get("/api/labels")
async def list_labels():
    return {"labels": [lbl.to_dict() for lbl in _controller().labels()]}


@app.post("/api/connect")
async def connect():
    ok = await _controller().connect()
    return {"connected": ok, "link": _controller().gateway.to_dict()}


@app.post("/api/disconnect")
async def disconnect():
    await _controller().disconnect()
    return {"connected": False, "link": _controller().gateway.to_dict()}


@app.post("/api/examples")
async def add_example(req: ExampleRequest):
    if not req.label.strip():
        raise HTTPException(status_code=400, detail="label must not be empty")
    if not _controller().add_example(req.label, name=req.name):
        raise HTTPException(status_code=409, detail="no hand available")
    return {"labels": [lbl.to_dict() for lbl in _controller().labels()]}


@app.delete("/api/labels/{label}")
async def remove_label(label: str):
    removed = _controller().remove_label(label)
    if removed == 0:
        raise HTTPException(status_code=404, detail=f"unknown label: {label}")
    return {"removed": removed}


@app.post("/api/reset")
async def reset_all():
    _controller().reset_all()
    return {"labels": []}


@app.post("/api/train")
async def hold_train(req: TrainRequest):
    _controller().hold_train(req.active, req.label)
    return {"active": req.active, "label": _controller().label_text}


@app.post("/api/mode")
async def set_mode(req: ModeRequest):
    try:
        _controller().set_mode(Mode(req.mode))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown mode: {req.mode}")
    return {"mode": _controller().mode.value}


@app.post("/api/protocol")
async def set_protocol(req: ProtocolRequest):
    try:
        _controller().set_protocol_variant(ProtocolVariant(req.variant))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown protocol: {req.variant}")
    c = _controller()
    return {"finger_protocol": c.finger_protocol.value, "gesture_protocol": c.gesture_protocol.value}


@app.post("/api/threshold")
async def set_threshold(req: ThresholdRequest):
    try:
        _controller().set_threshold(req.threshold)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"threshold": _controller().threshold}


@app.post("/api/transmission/start")
async def start_transmission():
    _controller().start_transmission()
    return {"tracking": True}


@app.post("/api/transmission/stop")
async def stop_transmission():
    _controller().stop_transmission()
    return {"tracking": False}


@app.post("/api/flip")
async def set_flip(req: FlipRequest):
    _controller().set_flip(req.flip)
    return {"flip": _controller().flip}


@app.post("/api/recording/start")
async def start_recording():
    state.recorder.start()
    logger.info("Recording landmark frames")
    return {"recording": True}


@app.post("/api/recording/stop")
async def stop_recording(req: RecordingRequest):
    if not state.recorder.is_recording:
        raise HTTPException(status_code=409, detail="not recording")
    frames = state.recorder.stop()
    state.recorder.save(req.path)
    logger.info("Saved %d frames to %s", frames, req.path)
    return {"recording": False, "frames": frames, "path": req.path}


# --- WebSocket: landmark frames ---

@app.websocket("/ws/landmarks")
async def landmarks_endpoint(ws: WebSocket):
    await ws.accept()
    state.frame_clients.add(ws)
    logger.info("Frame source connected (%d total)", len(state.frame_clients))

    try:
        while True:
            msg = await ws.receive_text()
            try:
                data = json.loads(msg)
            except json.JSONDecodeError:
                await ws.send_json({"type": "error", "detail": "invalid JSON"})
                continue
            if not isinstance(data, dict):
                await ws.send_json({"type": "error", "detail": "expected a JSON object"})
                continue

            if data.get("type") == "ping":
                await ws.send_json({"type": "pong"})
                continue

            controller = _controller()
            landmarks = data.get("landmarks")
            report = controller.process_frame(landmarks)
            if state.recorder.is_recording:
                train = controller.label_text if controller.holding else None
                state.recorder.add_frame(landmarks if report.hand_present else None, train=train)
            await ws.send_json({"type": "frame", **report.to_dict()})
            # let the scheduled write start before the next frame arrives
            await asyncio.sleep(0)
    except WebSocketDisconnect:
        pass
    finally:
        state.frame_clients.discard(ws)
        logger.info("Frame source disconnected (%d total)", len(state.frame_clients))


@app.on_event("shutdown")
async def shutdown():
    await _controller().disconnect()
