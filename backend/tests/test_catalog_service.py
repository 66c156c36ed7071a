"""Product code allocation and provider price synchronisation."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

import pytest

from backend.app.billing import BillingConfig, BillingProviderName, BillingValidationError, CodeAllocationError
from backend.app.catalog import (
    CatalogPrice,
    CatalogRepository,
    CatalogService,
    Product,
    ProductDraft,
    ProductStatus,
    format_product_code,
    normalize_category,
)
from backend.app.catalog.codes import PRODUCT_CODE_CONSTRAINT, parse_product_code_number
from backend.app.catalog.models import SyncAction
from backend.app.storage import DuplicateKeyError, MissingFunctionError

MOCK = BillingProviderName.MOCK


class InMemoryCatalogRepository(CatalogRepository):
    def __init__(self, *, has_generator: bool = True) -> None:
        self.has_generator = has_generator
        self.products: Dict[str, Product] = {}
        self.prices: List[CatalogPrice] = []
        self.scripted_codes: List[str] = []
        self.insert_error: Optional[Exception] = None

    def generate_product_code(self, category_code: str) -> Optional[str]:
        if not self.has_generator:
            raise MissingFunctionError("generate_product_code")
        if self.scripted_codes:
            return self.scripted_codes.pop(0)
        return format_product_code(category_code, self.max_product_code_number(category_code) + 1)

    def max_product_code_number(self, category_code: str) -> int:
        numbers = [parse_product_code_number(product.product_code, category_code) for product in self.products.values()]
        return max(numbers, default=0)

    def _build(self, draft: ProductDraft, product_code: str) -> Product:
        if self.insert_error is not None:
            raise self.insert_error
        if any(product.product_code == product_code for product in self.products.values()):
            raise DuplicateKeyError(PRODUCT_CODE_CONSTRAINT)
        return Product(
            id=str(uuid4()),
            product_code=product_code,
            name=draft.name,
            description=draft.description,
            category=draft.category,
            monthly_price=draft.monthly_price,
            stock_quantity=draft.stock_quantity,
            status=draft.status,
            is_active=draft.is_active,
            image_url=draft.image_url,
            video_url=draft.video_url,
        )

    def insert_product(self, draft: ProductDraft, product_code: str) -> Product:
        product = self._build(draft, product_code)
        self.products[product.id] = product
        return product

    def insert_products(self, drafts: Sequence[ProductDraft], product_codes: Sequence[str]) -> List[Product]:
        staged: List[Product] = []
        for draft, code in zip(drafts, product_codes):
            if any(product.product_code == code for product in staged):
                raise DuplicateKeyError(PRODUCT_CODE_CONSTRAINT)
            staged.append(self._build(draft, code))
        for product in staged:
            self.products[product.id] = product
        return staged

    def list_active_products(self, product_ids: Sequence[str] = ()) -> List[Product]:
        return [
            product
            for product in self.products.values()
            if product.is_active and (not product_ids or product.id in product_ids)
        ]

    def list_catalog_prices(self, provider: BillingProviderName, product_ids: Sequence[str]) -> List[CatalogPrice]:
        return [price for price in reversed(self.prices) if price.provider == provider and price.product_id in product_ids]

    def insert_catalog_price(self, price: CatalogPrice) -> CatalogPrice:
        if any(existing.provider_price_id == price.provider_price_id for existing in self.prices):
            raise DuplicateKeyError("billing_catalog_prices_provider_price_id_key")
        self.prices.append(price)
        return price


@pytest.fixture
def catalog_repository() -> InMemoryCatalogRepository:
    return InMemoryCatalogRepository()


@pytest.fixture
def catalog_service(catalog_repository, payment_provider) -> CatalogService:
    return CatalogService(repository=catalog_repository, provider=payment_provider, config=BillingConfig())


def chair(**overrides) -> dict:
    payload = {"name": "Ergonomic Chair", "category": "chair", "monthly_price": "45", "stock_quantity": 12}
    payload.update(overrides)
    return payload


def add_active_product(repository: InMemoryCatalogRepository, name: str, price: str) -> Product:
    product = Product(
        id=str(uuid4()),
        product_code=format_product_code("DESK", len(repository.products) + 1),
        name=name,
        category="Desks",
        monthly_price=Decimal(price),
        status=ProductStatus.ACTIVE,
        is_active=True,
    )
    repository.products[product.id] = product
    return product


def test_category_aliases_and_code_format():
    assert normalize_category(" Chairs ") == ("Chairs", "CHAIR")
    assert normalize_category("accessory") == ("Accessories", "ACCESSORY")
    assert normalize_category("sofa") is None
    assert format_product_code("DESK", 12) == "DESK-000012"
    assert parse_product_code_number("DESK-000012", "DESK") == 12
    assert parse_product_code_number("CHAIR-000001", "DESK") == 0


def test_create_product_uses_generated_code(catalog_service):
    product = catalog_service.create_product(chair())

    assert product.product_code == "CHAIR-000001"
    assert product.category == "Chairs"
    assert product.status == ProductStatus.DRAFT
    assert product.stock_quantity == 12


def test_create_product_falls_back_to_max_plus_one(payment_provider):
    repository = InMemoryCatalogRepository(has_generator=False)
    service = CatalogService(repository=repository, provider=payment_provider)
    service.create_product(chair())
    service.create_product(chair(name="Task Chair"))

    product = service.create_product(chair(name="Lounge Chair"))

    assert product.product_code == "CHAIR-000003"


def test_create_product_retries_code_collisions(catalog_service, catalog_repository):
    existing = catalog_service.create_product(chair())
    catalog_repository.scripted_codes = [existing.product_code, "CHAIR-000002"]

    product = catalog_service.create_product(chair(name="Task Chair"))

    assert product.product_code == "CHAIR-000002"


def test_create_product_gives_up_after_repeated_collisions(catalog_service, catalog_repository):
    existing = catalog_service.create_product(chair())
    catalog_repository.scripted_codes = [existing.product_code] * 5

    with pytest.raises(CodeAllocationError) as excinfo:
        catalog_service.create_product(chair(name="Task Chair"))

    assert excinfo.value.status_code == 409
    assert excinfo.value.message == "Failed to generate a unique product code. Please retry."


def test_other_unique_violations_are_not_retried(catalog_service, catalog_repository):
    catalog_repository.insert_error = DuplicateKeyError("products_pkey")

    with pytest.raises(DuplicateKeyError):
        catalog_service.create_product(chair())


def test_create_product_reports_every_validation_problem(catalog_service):
    with pytest.raises(BillingValidationError) as excinfo:
        catalog_service.create_product(
            {"name": " ", "category": "sofa", "monthly_price": 0, "stock_quantity": -1, "image_url": "ftp://x"}
        )

    assert excinfo.value.message == "name is required"
    assert excinfo.value.payload["errors"] == [
        "name is required",
        "category is invalid",
        "monthly_price must be a positive number",
        "stock_quantity must be an integer greater than or equal to 0",
        "image_url must be a valid HTTP(S) URL",
    ]


def test_import_allocates_sequential_codes_per_category(payment_provider):
    repository = InMemoryCatalogRepository(has_generator=False)
    service = CatalogService(repository=repository, provider=payment_provider)
    rows = [chair(), chair(name="Task Chair", status="active"), {"name": "Standing Desk", "category": "desks", "monthly_price": 120}]

    products = service.import_products(rows)

    assert [product.product_code for product in products] == ["CHAIR-000001", "CHAIR-000002", "DESK-000001"]
    assert {product.status for product in products} == {ProductStatus.DRAFT}


def test_import_is_all_or_nothing(catalog_service, catalog_repository):
    rows = [chair(), chair(category="sofa", monthly_price="abc")]

    with pytest.raises(BillingValidationError) as excinfo:
        catalog_service.import_products(rows)

    assert excinfo.value.message == "Import validation failed"
    assert excinfo.value.payload["errors"] == [
        "Row 2: category is invalid",
        "Row 2: monthly_price must be a positive number",
    ]
    assert catalog_repository.products == {}


def test_empty_import_is_rejected(catalog_service):
    with pytest.raises(BillingValidationError):
        catalog_service.import_products([])


def test_sync_creates_missing_prices_and_skips_exact_matches(catalog_service, catalog_repository, payment_provider):
    synced = add_active_product(catalog_repository, "Standing Desk", "120")
    repriced = add_active_product(catalog_repository, "Corner Desk", "95")
    catalog_repository.prices.append(
        CatalogPrice(
            product_id=synced.id,
            provider=MOCK,
            provider_product_id="prod_desk",
            provider_price_id="price_desk",
            currency="myr",
            unit_amount=Decimal("120.00"),
        )
    )
    catalog_repository.prices.append(
        CatalogPrice(
            product_id=repriced.id,
            provider=MOCK,
            provider_product_id="prod_corner",
            provider_price_id="price_corner_old",
            currency="myr",
            unit_amount=Decimal("90.00"),
        )
    )

    report = catalog_service.sync_catalog_prices()

    assert report.total_products == 2
    assert report.created_count == 1
    assert report.skipped_count == 1
    actions = {result.product_id: result.action for result in report.synced}
    assert actions == {synced.id: SyncAction.SKIPPED, repriced.id: SyncAction.CREATED}
    assert payment_provider.price_requests[0].existing_provider_product_id == "prod_corner"
    assert catalog_repository.prices[-1].unit_amount == Decimal("95.00")


def test_sync_dry_run_uses_placeholders(catalog_service, catalog_repository, payment_provider):
    product = add_active_product(catalog_repository, "Standing Desk", "120")

    report = catalog_service.sync_catalog_prices(dry_run="true", currency="USD")

    result = report.synced[0]
    assert report.dry_run is True
    assert result.provider_product_id == f"pending_{product.id}"
    assert result.provider_price_id == f"pending_price_{product.id}"
    assert result.currency == "usd"
    assert payment_provider.price_requests == []
    assert catalog_repository.prices == []


def test_sync_limits_to_requested_products(catalog_service, catalog_repository):
    wanted = add_active_product(catalog_repository, "Standing Desk", "120")
    add_active_product(catalog_repository, "Corner Desk", "95")

    report = catalog_service.sync_catalog_prices(product_ids=[wanted.id, "not-a-uuid"])

    assert [result.product_id for result in report.synced] == [wanted.id]


def test_sync_with_no_active_products_is_empty(catalog_service):
    report = catalog_service.sync_catalog_prices()

    assert report.total_products == 0
    assert report.synced == []
