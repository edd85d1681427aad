#!/usr/bin/env python3
"""
Challenge image rendering

Draws each challenge character rotated and offset on a speckled background
with a few crossing lines, then encodes the result as a PNG data URI.
"""

import base64
import random

import cv2
import numpy as np

from error_handling import ChallengeRenderError

GLYPH_SIZE = 40
CHAR_STEP = 30
IMAGE_HEIGHT = 56
PADDING = 12
MAX_ROTATION_DEG = 25
FONT = cv2.FONT_HERSHEY_SIMPLEX


def _render_glyph(char, angle):
    """Single-channel glyph mask, centered and rotated"""
    mask = np.zeros((GLYPH_SIZE, GLYPH_SIZE), dtype=np.uint8)
    (text_w, text_h), baseline = cv2.getTextSize(char, FONT, 1.0, 2)
    origin = ((GLYPH_SIZE - text_w) // 2, (GLYPH_SIZE + text_h) // 2)
    cv2.putText(mask, char, origin, FONT, 1.0, 255, 2, cv2.LINE_AA)

    center = (GLYPH_SIZE / 2, GLYPH_SIZE / 2)
    matrix = cv2.getRotationMatrix2D(center, angle, 1.0)
    return cv2.warpAffine(mask, matrix, (GLYPH_SIZE, GLYPH_SIZE))


def render_challenge(text, rng=None):
    """Render challenge text to a BGR image"""
    if not text:
        raise ChallengeRenderError("Cannot render an empty challenge")

    rng = rng or random.Random()
    noise = np.random.default_rng(rng.randrange(2 ** 32))

    width = PADDING * 2 + CHAR_STEP * (len(text) - 1) + GLYPH_SIZE
    img = np.full((IMAGE_HEIGHT, width, 3), 240, dtype=np.uint8)

    # Background speckle
    speckle = noise.integers(0, 45, size=(IMAGE_HEIGHT, width), dtype=np.uint8)
    img = cv2.subtract(img, cv2.merge([speckle, speckle, speckle]))

    for i, char in enumerate(text):
        angle = rng.uniform(-MAX_ROTATION_DEG, MAX_ROTATION_DEG)
        glyph = _render_glyph(char, angle)

        x = PADDING + i * CHAR_STEP + rng.randint(-3, 3)
        x = min(max(x, 0), width - GLYPH_SIZE)
        y = rng.randint(0, IMAGE_HEIGHT - GLYPH_SIZE)

        color = np.array([rng.randint(0, 120) for _ in range(3)], dtype=np.float32)
        alpha = (glyph.astype(np.float32) / 255.0)[..., None]
        region = img[y:y + GLYPH_SIZE, x:x + GLYPH_SIZE].astype(np.float32)
        blended = region * (1.0 - alpha) + color * alpha
        img[y:y + GLYPH_SIZE, x:x + GLYPH_SIZE] = blended.astype(np.uint8)

    for _ in range(3):
        start = (rng.randint(0, width - 1), rng.randint(0, IMAGE_HEIGHT - 1))
        end = (rng.randint(0, width - 1), rng.randint(0, IMAGE_HEIGHT - 1))
        color = tuple(rng.randint(60, 180) for _ in range(3))
        cv2.line(img, start, end, color, 1, cv2.LINE_AA)

    return img


def encode_data_uri(img):
    ok, buffer = cv2.imencode('.png', img)
    if not ok:
        raise ChallengeRenderError("PNG encoding failed")
    return f"data:image/png;base64,{base64.b64encode(buffer).decode()}"


def challenge_data_uri(text, rng=None):
    return encode_data_uri(render_challenge(text, rng))
