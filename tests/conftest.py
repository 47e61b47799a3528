"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins the environment before ipecho settings are imported so a developer's
local .env file or shell variables can't leak into the tests.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ["LOG_LEVEL"] = "WARNING"
for _name in list(os.environ):
    if _name.startswith("APP_") and _name != "APP_ENV":
        del os.environ[_name]

from typing import Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ipecho.core.app_factory import create_app
from ipecho.core.config import AppSettings, Settings


@pytest.fixture
def make_app() -> Callable[..., FastAPI]:
    """Build an isolated app; keyword arguments override AppSettings fields."""

    def _make(**app_overrides) -> FastAPI:
        cfg = Settings(app=AppSettings(**app_overrides))
        return create_app(cfg, configure_logs=False)

    return _make


@pytest.fixture
def make_client(make_app) -> Callable[..., TestClient]:
    def _make(**app_overrides) -> TestClient:
        return TestClient(make_app(**app_overrides))

    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()
