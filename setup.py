"""
AI Speaker: build script.

Usage:
    # Development install (editable, with test tools):
    pip install -e ".[test]"

    # Run the API (embedded worker) or a standalone worker:
    python3 main.py serve
    python3 main.py worker

yt-dlp and ffmpeg must be on PATH at runtime.
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "aispeaker"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Talk to the speaker of a video in their own cloned voice",
    packages=find_namespace_packages(include=["aispeaker*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        "pydantic>=2.5.0",
        "redis>=5.0.0",
        "websockets>=14.0",
    ],
    extras_require={
        "test": [
            "httpx>=0.27.0",
            "pytest>=8.0.0",
        ],
    },
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "aispeaker=main:main",
        ],
    },
)
