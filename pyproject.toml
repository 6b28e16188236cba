[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cinecapture"
version = "0.1.0"
description = "Camera capture building blocks: frame statistics, NV21 conversion, still image writers, a Motion-JPEG encoder and a frame ring buffer"
requires-python = ">=3.10"
keywords = ["camera", "raw", "dng", "jpeg", "mjpeg", "yuv", "nv21", "bmp", "png", "capture"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Capture",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
]
dependencies = [
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["cinecapture"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
