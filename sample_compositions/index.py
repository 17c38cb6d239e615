"""Sample compositions.

Render with::

    python render_main.py sample_compositions TitleCard title.mp4 --props '{"title": "Hello"}'
"""
from __future__ import annotations

import numpy as np
from PIL import Image, ImageDraw

from palette import ACCENT, BACKGROUND


def title_card(frame, composition, props):
    progress = frame / max(composition.duration_in_frames - 1, 1)
    image = Image.new("RGB", (composition.width, composition.height), BACKGROUND)
    draw = ImageDraw.Draw(image)
    bar_width = int(composition.width * progress)
    draw.rectangle([0, composition.height - 24, bar_width, composition.height], fill=ACCENT)
    draw.text((40, composition.height // 2), str(props.get("title", "Untitled")), fill=(255, 255, 255))
    return image


def plasma(frame, composition, props):
    ys, xs = np.mgrid[0 : composition.height, 0 : composition.width]
    t = frame / composition.fps
    value = np.sin(xs / 23.0 + t) + np.sin(ys / 17.0 - t) + np.sin((xs + ys) / 31.0 + 2 * t)
    red = (np.sin(value * np.pi) + 1) * 127.5
    blue = (np.cos(value * np.pi) + 1) * 127.5
    green = np.full_like(red, 64)
    return np.dstack([red, green, blue])


def get_compositions():
    return [
        {
            "id": "TitleCard",
            "width": 1280,
            "height": 720,
            "fps": 30,
            "duration_in_frames": 90,
            "component": title_card,
        },
        {
            "id": "Plasma",
            "width": 640,
            "height": 360,
            "fps": 24,
            "duration_in_frames": 48,
            "component": plasma,
        },
    ]
