"""Shared fixtures: the built-in configuration and an engine around it."""

from __future__ import annotations

import random

import pytest

from phiguard.config.loader import load_default_config
from phiguard.config.schema import EngineConfig
from phiguard.config.versions import ConfigVersionStore
from phiguard.engine import PHIEngine
from phiguard.events import CollectingSink
from phiguard.transform.keys import FernetKeyManager

RAMQ_NOTE = "Patient RAMQ: ABCD 1234 5678 09, DOB 1990-01-01"

CLINICAL_NOTE = (
    "Patiente: Marie Gagnon, NAM TREM 8556 1512, NAS 130 692 544.\n"
    "MRN: A1234567. Tél: 514-555-0199. Courriel: marie.gagnon@example.com\n"
    "Dx F32.1, vue le 15 mars 2024, code postal H2X 1Y4."
)


@pytest.fixture(scope="session")
def config() -> EngineConfig:
    return load_default_config()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def kms() -> FernetKeyManager:
    return FernetKeyManager()


@pytest.fixture
def engine(config: EngineConfig, sink: CollectingSink, kms: FernetKeyManager) -> PHIEngine:
    return PHIEngine(
        ConfigVersionStore.with_config(config),
        kms=kms,
        events=sink,
        hash_salt=b"test-salt",
        rng=random.Random(7),
    )
