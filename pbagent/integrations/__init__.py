# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integrations - report delivery and the FastAPI trigger surface.

The FastAPI plugin lives in pbagent.integrations.fastapi and is imported
from there, so the core does not pull in the web framework.
"""

from pbagent.integrations.callback import CallbackReporter

__all__ = [
    "CallbackReporter",
]
