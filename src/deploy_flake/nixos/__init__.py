# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/__init__.py

from .models import (
    ActivationMode,
    ActivationRun,
    ActivationState,
    BuiltSystem,
    Health,
    HealthReport,
    Target,
)

__all__ = [
    "ActivationMode",
    "ActivationRun",
    "ActivationState",
    "BuiltSystem",
    "Health",
    "HealthReport",
    "Target",
]
