"""Shared fixtures for the census and scraper tests."""

from __future__ import annotations

import contextlib

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import node_common


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _clear_shutdown_flag():
    node_common.reset_shutdown()
    yield
    node_common.reset_shutdown()


@pytest.fixture
def serve_app():
    """
    Factory for an in-process HTTP server plus a client session.

    Usage:
        async with serve_app(routes) as (server, session):
            url = str(server.make_url("/path"))
    """

    @contextlib.asynccontextmanager
    async def _serve(routes: web.RouteTableDef):
        app = web.Application()
        app.add_routes(routes)
        async with TestServer(app) as server:
            async with aiohttp.ClientSession() as session:
                yield server, session

    return _serve


def snapshot_entry(user_agent: object, protocol: int = 70016) -> list:
    """Bitnodes snapshot array with the fields the census reads."""
    return [protocol, user_agent, 1700000000, 1033, 820000, None, None, None, 0.0, 0.0, None, None, None]


@pytest.fixture
def make_entry():
    return snapshot_entry
