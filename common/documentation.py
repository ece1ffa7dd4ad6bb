"""
OpenAPI configuration for the escrow service
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

ERROR_RESPONSE_SCHEMA = {
    "type": "object",
    "required": ["success", "error", "timestamp"],
    "properties": {
        "success": {
            "type": "boolean",
            "example": False,
            "description": "Always false for error responses"
        },
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {
                    "type": "string",
                    "example": "ESCROW_ALREADY_FINALIZED",
                    "description": "Standardized error code"
                },
                "message": {
                    "type": "string",
                    "example": "This escrow has already been finalized.",
                    "description": "Human-readable error message"
                },
                "field": {
                    "type": "string",
                    "example": "buyer_percentage",
                    "description": "Field that caused the error (optional)"
                },
                "context": {
                    "type": "object",
                    "description": "Additional error context (optional)"
                }
            }
        },
        "timestamp": {
            "type": "number",
            "example": 1699123456.789,
            "description": "Unix timestamp when error occurred"
        },
        "trace_id": {
            "type": "string",
            "example": "abc123def456",
            "description": "Trace ID for debugging (optional)"
        }
    }
}

def _error_response(description: str) -> Dict[str, Any]:
    return {
        "description": description,
        "content": {
            "application/json": {
                "schema": {"$ref": "#/components/schemas/ErrorResponse"}
            }
        }
    }

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """Create enhanced OpenAPI schema with bearer auth and the error envelope"""

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
            "description": "JWT Bearer token; `sub` is the user id, `scope` is `user` or `admin`"
        }
    }
    components.setdefault("schemas", {})["ErrorResponse"] = ERROR_RESPONSE_SCHEMA

    standard_responses = {
        "400": _error_response("Validation or precondition failure"),
        "401": _error_response("Unauthorized"),
        "403": _error_response("Not authorized for this escrow or dispute"),
        "404": _error_response("Not Found"),
        "409": _error_response("Escrow or dispute is not in the required state"),
        "503": _error_response("Storage unavailable, safe to retry"),
    }

    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                operation["responses"].update(standard_responses)

    openapi_schema["tags"] = [
        {"name": "Orders", "description": "Checkout and escrow lifecycle"},
        {"name": "Disputes", "description": "Dispute threads and resolution"},
        {"name": "Wallet", "description": "Balances, ledger history and withdrawals"},
        {"name": "Administration", "description": "Commission rate, finances and dispute queue"},
        {"name": "Internal", "description": "Deposit feed and auto-finalize trigger"},
        {"name": "Health", "description": "System health and monitoring"},
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

ESCROW_DOCS = """
## Escrow

Every order locks the buyer's payment in an escrow until one of:

- the buyer **finalizes** it, paying the vendor the post-commission amount;
- the auto-finalize deadline passes (24h digital, 120h physical, +48h per extension, max 5);
- a **dispute** is resolved by the vendor or an admin with a percentage split.

Each transition is applied with a conditional update, so repeating a call never pays twice.
"""
