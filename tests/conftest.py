from __future__ import annotations

import pytest

from dynamic_app_groups.config import SyncConfig
from dynamic_app_groups.reconciler import Reconciler

from tests.factories import FakeDirectory, FakeInventory


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig()


@pytest.fixture
def reconciler(sync_config, inventory, directory) -> Reconciler:
    return Reconciler(sync_config, inventory, directory)
