"""Payments module exports"""

from . import router, schemas, services, paymongo_client, state_machine, webhooks

__all__ = ["router", "schemas", "services", "paymongo_client", "state_machine", "webhooks"]
