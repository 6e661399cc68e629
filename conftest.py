"""Pytest configuration: browser fixtures for end-to-end tests, synthetic images for the rest"""
import numpy as np
import pytest
from playwright.sync_api import sync_playwright

from create_sample_images import create_reference_image
from piecetracker import imaging


@pytest.fixture(scope="session")
def browser():
    """Create a browser instance for the test session"""
    with sync_playwright() as p:
        browser = p.chromium.launch(headless=True)
        yield browser
        browser.close()


@pytest.fixture(scope="function")
def page(browser):
    """Create a new page for each test"""
    context = browser.new_context()
    page = context.new_page()
    yield page
    page.close()
    context.close()


@pytest.fixture(scope="session")
def reference_bgr():
    """Synthetic 640x480 BGR reference shared across tests (treat as read-only)"""
    img = create_reference_image(seed=0)
    img.setflags(write=False)
    return img


@pytest.fixture
def noise_probe():
    """Preprocessed random probe that should not match the reference"""
    rng = np.random.default_rng(1234)
    noise = rng.integers(0, 256, size=(100, 100), dtype=np.uint8)
    return imaging.preprocess(noise)
