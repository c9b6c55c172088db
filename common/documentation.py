"""
OpenAPI configuration for the credit ledger API
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

from common.error_handling import ErrorCodes

ERROR_STATUS_DESCRIPTIONS = {
    "400": "Bad Request",
    "401": "Unauthorized",
    "402": "Payment Not Confirmed",
    "403": "Forbidden",
    "404": "Not Found",
    "409": "Conflict",
    "429": "Rate Limit Exceeded",
    "500": "Internal Server Error",
    "503": "External Service Unavailable",
}

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """Build the OpenAPI schema once, adding auth and the error envelope"""

    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "User token (sub = user id, wallet = bound address) or internal service token"
        }
    }

    error_codes = sorted(
        value for name, value in vars(ErrorCodes).items() if not name.startswith("_")
    )

    components.setdefault("schemas", {})["ErrorResponse"] = {
        "type": "object",
        "required": ["success", "error", "timestamp"],
        "properties": {
            "success": {
                "type": "boolean",
                "example": False,
            },
            "error": {
                "type": "object",
                "required": ["code", "message"],
                "properties": {
                    "code": {
                        "type": "string",
                        "enum": error_codes,
                        "example": ErrorCodes.INSUFFICIENT_CREDITS,
                    },
                    "message": {
                        "type": "string",
                        "example": "Insufficient available credits",
                    },
                    "field": {
                        "type": "string",
                        "example": "amount_gb",
                    },
                    "context": {
                        "type": "object",
                    }
                }
            },
            "timestamp": {
                "type": "number",
                "example": 1699123456.789,
            },
            "trace_id": {
                "type": "string",
                "example": "abc123def456",
            },
            "request_id": {
                "type": "string",
            }
        }
    }

    standard_responses = {
        status: {
            "description": text,
            "content": {
                "application/json": {
                    "schema": {"$ref": "#/components/schemas/ErrorResponse"}
                }
            }
        }
        for status, text in ERROR_STATUS_DESCRIPTIONS.items()
    }

    for path_item in openapi_schema.get("paths", {}).values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for status, response in standard_responses.items():
                    operation["responses"].setdefault(status, response)

    openapi_schema["tags"] = [
        {"name": "Purchases", "description": "Buy storage credits with a stablecoin charge"},
        {"name": "Marketplace", "description": "Peer-to-peer listings and two-phase settlement"},
        {"name": "Accounts", "description": "Balances, usage statistics and journal history"},
        {"name": "Internal", "description": "Service-to-service endpoints"},
        {"name": "Health", "description": "Liveness and circuit breaker status"},
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

API_DESCRIPTION = """
## Storage Credit Exchange

Credits are measured in MB and scoped to a (user, wallet) pair.

### Authentication
```
Authorization: Bearer <JWT_TOKEN>
```
User tokens carry `sub` (user id) and `wallet` (wallet address).
`/internal/*` endpoints require an internal token with the ledger audience.

### P2P settlement
1. `POST /listings/{id}/purchase` creates two charges (platform fee and
   seller payment) and a pending settlement. No credits move.
2. `POST /settlements/{id}/confirm` verifies both charges, takes listing
   inventory and deposits the credits to the buyer. Safe to retry.
"""
