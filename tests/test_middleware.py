"""Unit tests for individual pipeline stages."""

from __future__ import annotations

import pytest
from fastapi import FastAPI

from ipecho.core.middleware import DeadlineMiddleware, clean_path


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/", "/"),
        ("", "/"),
        ("//", "/"),
        ("//json", "/json"),
        ("/json/", "/json"),
        ("/a//b///c", "/a/b/c"),
        ("/a/./b/../json", "/a/json"),
        ("/../json", "/json"),
    ],
)
def test_clean_path(path: str, expected: str) -> None:
    assert clean_path(path) == expected


def test_deadline_rejects_non_positive_budget() -> None:
    with pytest.raises(ValueError):
        DeadlineMiddleware(FastAPI(), timeout_seconds=0)


def test_stages_are_registered_in_pipeline_order(make_app) -> None:
    app = make_app()

    # user_middleware is outermost first
    names = [
        getattr(m.kwargs.get("dispatch"), "__name__", None) or m.cls.__name__
        for m in app.user_middleware
    ]
    assert names == [
        "request_id_middleware",
        "client_address_middleware",
        "request_log_middleware",
        "recovery_middleware",
        "clean_path_middleware",
        "DeadlineMiddleware",
    ]
