"""Shared test configuration and fixtures for gaugecam."""

import numpy as np
import pytest

from gaugecam.vision.detection.bowtie import draw_bowtie

IMAGE_WIDTH = 640
IMAGE_HEIGHT = 480
TEMPLATE_DIM = 56
BOARD_INTENSITY = 180
WATER_INTENSITY = 60

# 2 columns x 4 rows of marker centers, row-major from top-left
GRID_COLUMNS_X = (160, 480)
GRID_ROWS_Y = (80, 160, 240, 320)


def grid_pixel_points() -> list[tuple[float, float]]:
    return [(float(x), float(y)) for y in GRID_ROWS_Y for x in GRID_COLUMNS_X]


def grid_world_points() -> list[tuple[float, float]]:
    """World coordinates with y as gauge height, increasing upward."""
    return [
        (float(col), float(len(GRID_ROWS_Y) - 1 - row))
        for row in range(len(GRID_ROWS_Y))
        for col in range(len(GRID_COLUMNS_X))
    ]


def render_target(
    water_y: float | None = None,
    water_slope: float = 0.0,
    shift: tuple[int, int] = (0, 0),
    seed: int = 7,
) -> np.ndarray:
    """Render a gray bowtie target scene.

    Args:
        water_y: Row of the water line at x=0, no water when None
        water_slope: Water line slope in pixels per pixel
        shift: (dx, dy) offset applied to the whole target
        seed: Background noise seed
    """
    rng = np.random.default_rng(seed)
    image = np.clip(
        rng.normal(BOARD_INTENSITY, 2.0, (IMAGE_HEIGHT, IMAGE_WIDTH)), 0, 255
    ).astype(np.uint8)

    half = TEMPLATE_DIM // 2
    marker = draw_bowtie(TEMPLATE_DIM * 2)[half : half + TEMPLATE_DIM, half : half + TEMPLATE_DIM]
    for x, y in grid_pixel_points():
        cx = int(x) + shift[0]
        cy = int(y) + shift[1]
        image[cy - half : cy + half, cx - half : cx + half] = marker

    if water_y is not None:
        rows, cols = np.mgrid[0:IMAGE_HEIGHT, 0:IMAGE_WIDTH]
        image[rows > water_slope * cols + water_y + shift[1]] = WATER_INTENSITY

    return image


@pytest.fixture()
def target_image():
    """Dry target scene."""
    return render_target()


@pytest.fixture()
def water_image():
    """Target scene with a level water line below the bottom marker row."""
    return render_target(water_y=355.0)


@pytest.fixture()
def pixel_points():
    return grid_pixel_points()


@pytest.fixture()
def world_points():
    return grid_world_points()


@pytest.fixture()
def image_size():
    return (IMAGE_WIDTH, IMAGE_HEIGHT)
