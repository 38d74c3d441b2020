"""Shared fixtures: in-memory store, fake APIs and a wired PipelineConfig."""

import pytest

from fakes import FakeCredentials, FakeDirectory, FakeStore, ScriptedReportClient, make_config, make_connection


@pytest.fixture
def connection():
    return make_connection()


@pytest.fixture
def store(connection):
    return FakeStore([connection])


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def report_client():
    return ScriptedReportClient()


@pytest.fixture
def config(store, credentials, directory, report_client):
    return make_config(store, credentials, directory, report_client)
