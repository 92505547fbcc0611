# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""GitVan - Git-native job automation."""

__version__ = "2.0.0"
