"""Packaging setup for the live stream health monitor."""

import os
from pathlib import Path

from setuptools import find_packages, setup


dist_name = "livestream-health"
package_dir = "livestream_health"
version = Path("VERSION.txt").read_text().strip()

install_requires = [
    "Flask>=3.0",
    "loguru>=0.7",
    "numpy>=1.26",
    "opencv-python>=4.8",
    "psutil>=5.9",
]

test_deps = [
    "pytest>=8.0",
    "pytest-asyncio>=0.23",
]

# Headless OpenCV for servers and CI runners without a display stack.
if os.getenv("LIVESTREAM_HEALTH_HEADLESS", "").strip().lower() in ("1", "true", "yes", "on"):
    install_requires = [
        "opencv-python-headless>=4.8" if dep.startswith("opencv-python") else dep
        for dep in install_requires
    ]

setup_kwargs = {
    "name": dist_name,
    "version": version,
    "zip_safe": False,
    "python_requires": ">=3.10",
    "packages": find_packages(include=[package_dir, f"{package_dir}.*"]),
    "include_package_data": True,
    "install_requires": install_requires,
    "extras_require": {"test": test_deps},
    "entry_points": {
        "console_scripts": [f"livestream-health={package_dir}.cli:main"],
    },
}

setup(**setup_kwargs)
