# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Ticket Bridge API server factory."""

import logging

from fastapi import FastAPI

from ticketbridge import __version__
from ticketbridge.api.routes.health import router as health_router

logger = logging.getLogger("ticketbridge.api.server")


def create_app(bridge=None) -> FastAPI:
    """Build the operational API around a BridgeManager."""
    app = FastAPI(
        title="Ticket Bridge API",
        description="Health, restart and stats endpoints for the ticket bridge",
        version=__version__,
    )
    app.state.bridge = bridge
    app.include_router(health_router)
    return app
