# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Pytest fixtures and configuration for ccd-hammer tests.
"""
import logging
import sys
from pathlib import Path

import pytest

# Add parent directory to path so the single-file module imports without install
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

import ccd_hammer  # noqa: E402


class FakeClock:
    """Monotonic clock that only advances when sleep() is called."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def parser():
    """Provide a fresh argument parser for testing."""
    return ccd_hammer.build_parser()


@pytest.fixture
def default_args(parser):
    """Provide default parsed arguments."""
    return parser.parse_args([])


@pytest.fixture
def ch():
    """Provide the ccd_hammer module for testing."""
    return ccd_hammer


@pytest.fixture
def clock():
    """Provide a fake clock whose sleep advances time instantly."""
    return FakeClock()


@pytest.fixture(autouse=True)
def _restore_logging():
    """--no-log disables logging process-wide; undo it after each test."""
    yield
    logging.disable(logging.NOTSET)
