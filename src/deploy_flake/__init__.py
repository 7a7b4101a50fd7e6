# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

"""Deploy a nix flake to remote NixOS systems, test first, then commit."""

__version__ = "0.1.0"
