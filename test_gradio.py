"""End-to-end tests for the Gradio tracking interface"""
import os
import socket
import subprocess
import sys
import time
from pathlib import Path

import cv2
import pytest

from create_sample_images import create_reference_image


def find_free_port():
    """Find a free port to run the test server on"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


@pytest.fixture(scope="module")
def gradio_app():
    """Start Gradio app for testing"""
    port = find_free_port()
    project_dir = Path(__file__).resolve().parent

    env = os.environ.copy()
    env['GRADIO_SERVER_PORT'] = str(port)

    process = subprocess.Popen(
        [sys.executable, "app.py"],
        cwd=str(project_dir),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env
    )

    # Wait for app to be ready (check if port is listening)
    max_wait = 30
    start_time = time.time()
    while time.time() - start_time < max_wait:
        if process.poll() is not None:
            stdout, stderr = process.communicate()
            error_msg = f"Gradio app process terminated unexpectedly.\nStdout: {stdout.decode()}\nStderr: {stderr.decode()}"
            raise RuntimeError(error_msg)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.settimeout(1)
            if s.connect_ex(('127.0.0.1', port)) == 0:
                # Port is open, wait a bit more for app to be fully ready
                time.sleep(2)
                break
        time.sleep(0.5)
    else:
        process.terminate()
        stdout, stderr = process.communicate(timeout=5)
        error_msg = f"Gradio app failed to start within timeout.\nStdout: {stdout.decode()}\nStderr: {stderr.decode()}"
        raise RuntimeError(error_msg)

    app_url = f"http://127.0.0.1:{port}"
    yield app_url

    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


@pytest.mark.e2e
def test_app_loads(page, gradio_app):
    """Test that the Gradio app loads successfully"""
    page.goto(gradio_app, wait_until="networkidle", timeout=30000)

    page.wait_for_selector("text=PieceTracker", timeout=10000)
    heading = page.locator("text=PieceTracker").first
    assert heading.is_visible()


@pytest.mark.e2e
def test_controls_exist(page, gradio_app):
    """Test that the reference and detection controls are present"""
    page.goto(gradio_app, wait_until="networkidle", timeout=30000)

    page.wait_for_selector("h3:has-text('Reference Image')", timeout=10000)
    assert page.locator("h3:has-text('Tracking View')").is_visible()
    for label in ("Set Reference", "Use Sample Reference", "Pause", "Resume", "Reset"):
        assert page.locator(f"button:has-text('{label}')").first.is_visible()


@pytest.mark.e2e
def test_sample_reference_starts_detection(page, gradio_app):
    """Test that loading the sample reference reports a running session"""
    page.goto(gradio_app, wait_until="networkidle", timeout=30000)
    page.wait_for_selector("button:has-text('Use Sample Reference')", timeout=10000)

    page.locator("button:has-text('Use Sample Reference')").click()

    page.wait_for_selector("text=Reference set", timeout=15000)
    assert page.locator("text=Reference set").first.is_visible()
    assert page.locator("text=Mode: COARSE").first.is_visible()


@pytest.mark.e2e
def test_uploaded_reference_and_pause(page, gradio_app, tmp_path):
    """Test uploading a reference image, then pausing detection"""
    page.goto(gradio_app, wait_until="networkidle", timeout=30000)
    page.wait_for_selector("h3:has-text('Reference Image')", timeout=10000)
    time.sleep(2)

    reference_path = tmp_path / "reference.png"
    cv2.imwrite(str(reference_path), create_reference_image(width=320, height=240))

    file_inputs = page.locator('input[type="file"]').all()
    assert file_inputs, "no file input for the reference image"
    file_inputs[0].set_input_files(str(reference_path))
    time.sleep(2)

    page.locator("button:has-text('Set Reference')").first.click()
    page.wait_for_selector("text=Reference set (320x240)", timeout=15000)

    page.locator("button:has-text('Pause')").click()
    page.wait_for_selector("text=Detection paused", timeout=10000)
    assert page.locator("text=Detection paused").is_visible()
