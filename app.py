"""Gradio interface for the live piece tracker"""

import logging
from pathlib import Path
from typing import Optional

import cv2
import gradio as gr
import numpy as np
import plotly.express as px

from create_sample_images import create_reference_image
from piecetracker import __version__
from piecetracker.config import SearchConfig
from piecetracker.detector import format_state_summary
from piecetracker.driver import FrameDriver, FrameResult
from piecetracker.overlay import draw_match

BASE_DIR = Path(__file__).resolve().parent
SAMPLE_REFERENCE_PATH = BASE_DIR / "media" / "reference.png"

NO_REFERENCE_MESSAGE = "Upload or capture a reference image, then press **Set Reference**."


def make_zoomable_plot(image: Optional[np.ndarray]):
    """Create a Plotly figure with zoom/pan for a numpy RGB image."""
    if image is None:
        base = np.zeros((10, 10, 3), dtype=np.uint8)
    else:
        base = image
    if base.dtype != np.uint8:
        base = np.clip(base, 0, 255).astype(np.uint8)
    fig = px.imshow(base)
    fig.update_layout(
        margin=dict(l=0, r=0, t=0, b=0),
        dragmode="pan",
        coloraxis_showscale=False,
    )
    fig.update_xaxes(showticklabels=False, showgrid=False, zeroline=False)
    fig.update_yaxes(
        showticklabels=False,
        showgrid=False,
        zeroline=False,
        scaleanchor="x",
        scaleratio=1,
    )
    return fig


def get_sample_reference() -> np.ndarray:
    """Sample reference as RGB: media/reference.png if present, else synthetic"""
    if SAMPLE_REFERENCE_PATH.exists():
        bgr = cv2.imread(str(SAMPLE_REFERENCE_PATH), cv2.IMREAD_COLOR)
        if bgr is not None:
            return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    return cv2.cvtColor(create_reference_image(), cv2.COLOR_BGR2RGB)


def _new_driver() -> FrameDriver:
    # Gradio hands us RGB arrays
    return FrameDriver(config=SearchConfig.from_env(), color_order="rgb")


def _format_stats(driver: FrameDriver) -> str:
    stats = driver.stats
    return (
        f"Frames: {driver.frame_count} | "
        f"avg {stats.avg_processing_ms:.1f} ms | "
        f"{stats.avg_fps:.1f} fps | "
        f"dropped {driver.dropped_frames}"
    )


def set_reference(image, driver):
    """Install the uploaded/captured image as the tracking reference"""
    if driver is None:
        driver = _new_driver()
    if image is None:
        return driver, None, NO_REFERENCE_MESSAGE, "", None, DEFAULT_PLOT
    reference = np.asarray(image)
    try:
        driver.capture_reference(reference)
    except (RuntimeError, ValueError) as exc:
        return driver, None, f"Error: {exc}", "", None, DEFAULT_PLOT

    h, w = reference.shape[:2]
    annotated = draw_match(reference, None, config=driver.controller.config)
    summary = format_state_summary(driver.controller.get_state())
    return (
        driver,
        reference,
        f"Reference set ({w}x{h}). Detection running.",
        summary,
        annotated,
        make_zoomable_plot(annotated),
    )


def use_sample_reference(driver):
    return set_reference(get_sample_reference(), driver)


def track_frame(frame, driver, reference):
    """Process one streamed webcam frame; unchanged outputs when skipped"""
    unchanged = (gr.update(), gr.update(), gr.update(), gr.update(), gr.update())
    if frame is None or driver is None or reference is None:
        return unchanged
    result: Optional[FrameResult] = driver.process_frame(frame)
    if result is None:
        return unchanged

    annotated = draw_match(
        reference, result.match, result.region, config=driver.controller.config
    )
    stats = _format_stats(driver) if driver.stats_due else gr.update()
    return (
        annotated,
        result.status,
        format_state_summary(result.state),
        stats,
        make_zoomable_plot(annotated),
    )


def pause_detection(driver):
    if driver is None:
        return NO_REFERENCE_MESSAGE
    driver.pause()
    return "Detection paused."


def resume_detection(driver):
    if driver is None or not driver.resume():
        return NO_REFERENCE_MESSAGE
    return "Detection running."


def reset_detection(driver):
    if driver is not None:
        driver.reset()
    return driver, None, NO_REFERENCE_MESSAGE, "", "", None, DEFAULT_PLOT


DEFAULT_PLOT = make_zoomable_plot(None)

# Create Gradio interface
app_theme = gr.themes.Soft()
with gr.Blocks(title=f"🎯 PieceTracker v{__version__}") as demo:
    gr.Markdown(
        f"""
    # 🎯 PieceTracker v{__version__}

    Capture a reference image, then hold a piece in front of the webcam and
    PieceTracker will follow it across the reference in real time.

    Notes:
    - The centre half of each webcam frame is used as the probe.
    - Rotations in 90° steps are tried first; once the match is confident the
      search narrows to finer angles and scales around the last position.
    """
    )

    driver_state = gr.State()
    reference_state = gr.State()

    with gr.Row():
        with gr.Column(scale=1):
            gr.Markdown("### Reference Image")
            reference_input = gr.Image(
                label="Reference",
                type="numpy",
                sources=["upload", "webcam", "clipboard"],
                height=300,
            )
            with gr.Row():
                set_button = gr.Button("📷 Set Reference", variant="primary")
                sample_button = gr.Button("Use Sample Reference")
            gr.Markdown("### Live Probe")
            live_input = gr.Image(
                label="Webcam",
                type="numpy",
                sources=["webcam"],
                streaming=True,
                height=300,
            )
            with gr.Row():
                pause_button = gr.Button("⏸️ Pause")
                resume_button = gr.Button("▶️ Resume")
                reset_button = gr.Button("🔄 Reset")
        with gr.Column(scale=1):
            gr.Markdown("### Tracking View")
            overlay_output = gr.Image(
                label="Reference with match",
                type="numpy",
                interactive=False,
                height=300,
            )
            status_output = gr.Markdown(NO_REFERENCE_MESSAGE)
            summary_output = gr.Markdown("")
            stats_output = gr.Markdown("")
            zoom_plot = gr.Plot(value=DEFAULT_PLOT, elem_id="tracking-zoom-view")
            gr.Markdown("Use the controls to zoom and pan the image.")

    set_button.click(
        fn=set_reference,
        inputs=[reference_input, driver_state],
        outputs=[
            driver_state,
            reference_state,
            status_output,
            summary_output,
            overlay_output,
            zoom_plot,
        ],
    )
    sample_button.click(
        fn=use_sample_reference,
        inputs=[driver_state],
        outputs=[
            driver_state,
            reference_state,
            status_output,
            summary_output,
            overlay_output,
            zoom_plot,
        ],
    )
    live_input.stream(
        fn=track_frame,
        inputs=[live_input, driver_state, reference_state],
        outputs=[overlay_output, status_output, summary_output, stats_output, zoom_plot],
        stream_every=0.1,
        time_limit=None,
    )
    pause_button.click(fn=pause_detection, inputs=[driver_state], outputs=status_output)
    resume_button.click(fn=resume_detection, inputs=[driver_state], outputs=status_output)
    reset_button.click(
        fn=reset_detection,
        inputs=[driver_state],
        outputs=[
            driver_state,
            reference_state,
            status_output,
            summary_output,
            stats_output,
            overlay_output,
            zoom_plot,
        ],
    )

    gr.Markdown(
        """
    ---
    ### About
    The search box (red) shrinks around the last match while tracking is
    confident. Match outlines are lime above 75% confidence, yellow above 60%
    and orange otherwise.
    """
    )

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    demo.launch(theme=app_theme)
