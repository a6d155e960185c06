"""gesture-link CLI.

Usage:
    gesture-link serve        Start the control server
    gesture-link replay       Run a landmark recording through a session
    gesture-link encode       Print the wire frame for finger values or a label
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from gesture_link.config import SessionConfig

app = typer.Typer(
    name="gesture-link",
    help="Hand gestures to a wireless peripheral, trained on the spot.",
    add_completion=False,
)


@app.callback()
def main_options(
    log_level: str = typer.Option("warning", "--log-level", help="Log level"),
):
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config: Optional[str], **overrides) -> SessionConfig:
    if config:
        path = Path(config)
        if not path.exists():
            typer.echo(f"❌ Config not found: {config}", err=True)
            raise typer.Exit(1)
        cfg = SessionConfig.from_yaml(path)
    else:
        cfg = SessionConfig()
    try:
        cfg.update(**{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        typer.echo(f"❌ Invalid setting: {e}", err=True)
        raise typer.Exit(1)
    return cfg


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8765, help="Port"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to session YAML config"),
    url: Optional[str] = typer.Option(None, "--url", help="WebSocket URL of the UART bridge"),
    server_log_level: str = typer.Option("info", "--server-log-level", help="uvicorn log level"),
):
    """Start the control server."""
    import uvicorn
    from gesture_link.server import app as fastapi_app, state

    cfg = _load_config(config, link_url=url)
    state.configure(cfg)
    link = cfg.link_url or "memory (dry run)"
    typer.echo(f"🚀 Starting gesture-link server on {host}:{port}")
    typer.echo(f"   Link: {link}")
    uvicorn.run(fastapi_app, host=host, port=port, log_level=server_log_level)


async def _replay(player, cfg: SessionConfig, realtime: bool, speed: float):
    from gesture_link.controller import RecognitionController
    from gesture_link.knn import ExampleStore
    from gesture_link.transport import MemoryLink, TransportGateway, WebSocketLink

    now = [0.0]
    link = WebSocketLink(cfg.link_url) if cfg.link_url else MemoryLink()
    if realtime:
        gateway = TransportGateway(link, min_interval=cfg.send_interval)
    else:
        # rate limit against recorded time instead of wall-clock time
        gateway = TransportGateway(link, min_interval=cfg.send_interval, clock=lambda: now[0])
    controller = RecognitionController(ExampleStore(k=cfg.k), gateway, cfg)

    if not await controller.connect():
        typer.echo(f"❌ Link failed: {gateway.status}", err=True)
        raise typer.Exit(1)
    controller.start_transmission()

    loop = asyncio.get_running_loop()
    start = loop.time()
    sent = []
    for frame in player.play():
        now[0] = frame.timestamp
        if realtime:
            delay = frame.timestamp / speed - (loop.time() - start)
            if delay > 0:
                await asyncio.sleep(delay)

        controller.hold_train(bool(frame.train), frame.train)
        report = controller.process_frame(frame.landmarks)
        if report.sent:
            sent.append(report.message)
            typer.echo(f"   {frame.timestamp:8.3f}s  → {report.message}")
        await asyncio.sleep(0)

    controller.stop_transmission()
    await controller.drain()
    await controller.disconnect()
    return controller, sent


@app.command()
def replay(
    recording: str = typer.Argument(..., help="Path to a landmark recording (.json)"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to session YAML config"),
    mode: Optional[str] = typer.Option(None, help="gesture_knn or finger_sync"),
    protocol: Optional[str] = typer.Option(None, help="Protocol variant (analog, digital, count, id, gesture, raw)"),
    threshold: Optional[float] = typer.Option(None, help="Confidence acceptance threshold"),
    url: Optional[str] = typer.Option(None, "--url", help="WebSocket URL of the UART bridge"),
    realtime: bool = typer.Option(False, help="Play at recorded timing"),
    speed: float = typer.Option(1.0, help="Playback speed multiplier (with --realtime)"),
):
    """Replay a landmark recording through a full session."""
    from gesture_link.protocol import ProtocolVariant
    from gesture_link.recorder import LandmarkPlayer

    path = Path(recording)
    if not path.exists():
        typer.echo(f"❌ Recording not found: {recording}", err=True)
        raise typer.Exit(1)

    overrides = {"mode": mode, "confidence_threshold": threshold, "link_url": url}
    if protocol is not None:
        try:
            variant = ProtocolVariant(protocol)
        except ValueError:
            typer.echo(f"❌ Unknown protocol: {protocol}", err=True)
            raise typer.Exit(1)
        key = "finger_protocol" if variant.is_finger else "gesture_protocol"
        overrides[key] = variant.value
    cfg = _load_config(config, **overrides)

    player = LandmarkPlayer.load(path)
    typer.echo(f"▶️  Replaying {path.name} ({player.frame_count} frames, {player.duration:.1f}s)")

    controller, sent = asyncio.run(_replay(player, cfg, realtime, speed))

    stats = controller.stats
    typer.echo(f"\n✅ Replay complete. {len(sent)} frames sent.")
    for lbl in controller.labels():
        typer.echo(f"   {lbl.name}: {lbl.count} examples")
    typer.echo(
        f"   Frames: {stats.frames} | Hands: {stats.hands} | "
        f"Accepted: {stats.accepted} | Rejected: {stats.rejected}"
    )


@app.command()
def encode(
    fingers: Optional[str] = typer.Option(None, help="Five comma-separated values 0-100, thumb first"),
    label: Optional[str] = typer.Option(None, help="Gesture label"),
    protocol: str = typer.Option("analog", help="Protocol variant"),
    threshold: float = typer.Option(50.0, help="Extension threshold for digital/count"),
):
    """Print the wire frame the peripheral would receive."""
    from gesture_link.protocol import (
        ProtocolError, ProtocolVariant, encode_fingers, encode_gesture, frame_message,
    )

    try:
        variant = ProtocolVariant(protocol)
        if fingers is not None:
            values = [float(v) for v in fingers.split(",")]
            message = encode_fingers(values, variant, threshold)
        elif label is not None:
            message = encode_gesture(label, variant)
        else:
            typer.echo("❌ Pass --fingers or --label", err=True)
            raise typer.Exit(1)
        frame = frame_message(message)
    except (ProtocolError, ValueError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo(repr(frame))


def main():
    app()


if __name__ == "__main__":
    main()
