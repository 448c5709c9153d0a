"""Operation cost and credit package catalogs."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_package import CreditPackage
from models.operation_cost import OperationCost
from services.credits import CreditLedger
from services.errors import NotFoundError, PricingUnavailableError

logger = logging.getLogger(__name__)


REQUIRED_OPERATIONS = ("dataset_upload", "model_training", "prediction", "report_generation")

DEFAULT_OPERATION_COSTS: List[Dict[str, Any]] = [
    {
        "id": "dataset_upload",
        "name": "Dataset upload",
        "description": "Upload and import a historical quotes dataset",
        "credit_cost": 10,
    },
    {
        "id": "model_training",
        "name": "Model training",
        "description": "Train a win-probability model on a dataset",
        "credit_cost": 10,
    },
    {
        "id": "prediction",
        "name": "Prediction",
        "description": "Score a single quote",
        "credit_cost": 2,
    },
    {
        "id": "report_generation",
        "name": "Report generation",
        "description": "Generate a detailed model report",
        "credit_cost": 50,
    },
]

DEFAULT_CREDIT_PACKAGES: List[Dict[str, Any]] = [
    {"id": "starter", "name": "Starter", "credits": 100, "price": Decimal("50"), "currency": "EUR", "sort_order": 1},
    {
        "id": "professional",
        "name": "Professional",
        "credits": 250,
        "price": Decimal("115"),
        "currency": "EUR",
        "is_popular": True,
        "sort_order": 2,
    },
    {"id": "enterprise", "name": "Enterprise", "credits": 500, "price": Decimal("200"), "currency": "EUR", "sort_order": 3},
]


def serialize_operation(operation: OperationCost) -> Dict[str, Any]:
    return {
        "id": operation.id,
        "name": operation.name,
        "description": operation.description,
        "credit_cost": operation.credit_cost,
        "is_active": bool(operation.is_active),
    }


def serialize_package(package: CreditPackage) -> Dict[str, Any]:
    return {
        "id": package.id,
        "name": package.name,
        "credits": package.credits,
        "price": str(package.price),
        "currency": package.currency,
        "is_popular": bool(package.is_popular),
        "sort_order": package.sort_order,
        "is_active": bool(package.is_active),
    }


class OperationCostCatalog:
    """Named paid operations and their credit prices."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_cost(self, operation_id: str) -> int:
        """Current price. Raises PricingUnavailableError instead of guessing a fallback."""
        result = await self._db.execute(
            select(OperationCost.credit_cost).where(
                OperationCost.id == operation_id,
                OperationCost.is_active.is_(True),
            )
        )
        cost = result.scalar_one_or_none()
        if cost is None:
            logger.error("pricing_unavailable operation=%s", operation_id)
            raise PricingUnavailableError(operation_id)
        return int(cost)

    async def has_sufficient_balance(self, account_id: str, operation_id: str) -> bool:
        cost = await self.get_cost(operation_id)
        return await CreditLedger(self._db).has_sufficient_balance(account_id, cost)

    async def list_operations(self, active_only: bool = True) -> List[OperationCost]:
        query = select(OperationCost).order_by(OperationCost.id)
        if active_only:
            query = query.where(OperationCost.is_active.is_(True))
        result = await self._db.execute(query)
        return list(result.scalars().all())

    async def initialize_defaults(self) -> int:
        """Insert missing default operations; never touches existing rows. Returns rows added."""
        existing = {operation.id for operation in await self.list_operations(active_only=False)}
        added = 0
        for default in DEFAULT_OPERATION_COSTS:
            if default["id"] in existing:
                continue
            self._db.add(OperationCost(**default))
            added += 1
        await self._db.commit()
        if added:
            logger.info("operation_catalog_seeded added=%s", added)
        return added

    async def update_operation(
        self,
        operation_id: str,
        *,
        credit_cost: Optional[int] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> OperationCost:
        result = await self._db.execute(select(OperationCost).where(OperationCost.id == operation_id))
        operation = result.scalar_one_or_none()
        if operation is None:
            raise NotFoundError(f"Operation '{operation_id}' not found", "Operation not found.")
        if credit_cost is not None:
            if int(credit_cost) < 0:
                raise ValueError("credit_cost must be >= 0")
            operation.credit_cost = int(credit_cost)
        if name is not None:
            operation.name = name
        if description is not None:
            operation.description = description
        if is_active is not None:
            operation.is_active = bool(is_active)
        await self._db.commit()
        logger.info(
            "operation_cost_updated operation=%s cost=%s active=%s",
            operation.id,
            operation.credit_cost,
            operation.is_active,
        )
        return operation

    async def missing_required_operations(self) -> List[str]:
        active = {operation.id for operation in await self.list_operations(active_only=True)}
        return [operation_id for operation_id in REQUIRED_OPERATIONS if operation_id not in active]

    async def validate(self) -> Dict[str, Any]:
        missing = await self.missing_required_operations()
        if missing:
            logger.warning("operation_catalog_incomplete missing=%s", ",".join(missing))
        return {"valid": not missing, "missing_operations": missing}


class CreditPackageCatalog:
    """Purchasable credit bundles."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def list_packages(self, active_only: bool = True) -> List[CreditPackage]:
        query = select(CreditPackage).order_by(CreditPackage.sort_order, CreditPackage.id)
        if active_only:
            query = query.where(CreditPackage.is_active.is_(True))
        result = await self._db.execute(query)
        return list(result.scalars().all())

    async def get_package(self, package_id: str) -> CreditPackage:
        result = await self._db.execute(
            select(CreditPackage).where(CreditPackage.id == package_id, CreditPackage.is_active.is_(True))
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise NotFoundError(f"Credit package '{package_id}' not found", "Credit package not found.")
        return package

    async def initialize_defaults(self) -> int:
        existing = {package.id for package in await self.list_packages(active_only=False)}
        added = 0
        for default in DEFAULT_CREDIT_PACKAGES:
            if default["id"] in existing:
                continue
            self._db.add(CreditPackage(**default))
            added += 1
        await self._db.commit()
        if added:
            logger.info("credit_packages_seeded added=%s", added)
        return added
