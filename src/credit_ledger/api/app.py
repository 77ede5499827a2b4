from __future__ import annotations

from typing import Optional, Sequence

from fastapi import FastAPI

from ..config import configure_logging, get_settings
from ..services.credit_service import CreditService
from .middleware import CreditChargeMiddleware
from .router import get_credit_service, router


def create_app(
    credit_service: Optional[CreditService] = None,
    charge_path_prefix: Optional[str] = None,
    skip_paths: Optional[Sequence[str]] = None,
) -> FastAPI:
    """
    Build the credit API. ``charge_path_prefix`` additionally installs the
    charging middleware in front of AI endpoints mounted under that prefix.
    """
    configure_logging(get_settings())
    app = FastAPI(title="Credit Ledger")
    app.include_router(router)

    service = credit_service or get_credit_service()
    if credit_service is not None:
        app.dependency_overrides[get_credit_service] = lambda: credit_service
    if charge_path_prefix:
        app.add_middleware(
            CreditChargeMiddleware,
            credit_service=service,
            path_prefix=charge_path_prefix,
            skip_paths=skip_paths,
        )
    return app
