from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from graindesk.core.errors import ContractSizeUnsupported
from graindesk.models.domain import ProductType

# One CBOT corn/wheat bushel is 0.0254012 t (56 lb); a corn contract is 5,000 bu.
BUSHEL_TONNES_CORN = Decimal("0.0254012")
CORN_CONTRACT_BUSHELS = 5000


@dataclass(frozen=True)
class ProductTerms:
    product: ProductType
    # Tonnes per futures contract, None when the product trades tonnage-only.
    contract_size: Decimal | None
    # Premium/futures unit -> USD per tonne.
    conversion_factor: Decimal
    quote_unit: str


PRODUCT_TERMS: dict[ProductType, ProductTerms] = {
    ProductType.corn: ProductTerms(
        product=ProductType.corn,
        contract_size=(BUSHEL_TONNES_CORN * CORN_CONTRACT_BUSHELS).quantize(Decimal("0.001")),
        conversion_factor=Decimal("0.3937"),
        quote_unit="Cts/Bu",
    ),
    ProductType.soybean_meal: ProductTerms(
        product=ProductType.soybean_meal,
        contract_size=Decimal("90.10"),
        conversion_factor=Decimal("0.9072"),
        quote_unit="USD/Short Ton",
    ),
    ProductType.wheat: ProductTerms(ProductType.wheat, None, Decimal("1"), "USD/MT"),
    ProductType.barley: ProductTerms(ProductType.barley, None, Decimal("1"), "USD/MT"),
    ProductType.ddgs: ProductTerms(ProductType.ddgs, None, Decimal("1"), "USD/MT"),
    ProductType.scrap: ProductTerms(ProductType.scrap, None, Decimal("1"), "USD/MT"),
}

# Factors seen for the same product in other desk tools. The canonical table
# above wins; these are only reported so the discrepancy stays visible.
FACTOR_DISCREPANCIES: dict[ProductType, tuple[Decimal, ...]] = {
    ProductType.soybean_meal: (Decimal("0.4640"),),
}


def _coerce_product(product: ProductType | str) -> ProductType:
    if isinstance(product, ProductType):
        return product
    return ProductType(str(product))


def product_terms(product: ProductType | str) -> ProductTerms:
    return PRODUCT_TERMS[_coerce_product(product)]


def get_contract_size(product: ProductType | str) -> Decimal | None:
    return product_terms(product).contract_size


def supports_contracts(product: ProductType | str) -> bool:
    return get_contract_size(product) is not None


def require_contract_size(product: ProductType | str) -> Decimal:
    size = get_contract_size(product)
    if size is None:
        p = _coerce_product(product)
        raise ContractSizeUnsupported(
            f"Product {p.value} has no futures contract size; use tonnage",
            details={"product": p.value},
        )
    return size


def get_conversion_factor(product: ProductType | str) -> Decimal:
    return product_terms(product).conversion_factor


def price_unit(product: ProductType | str, kind: str) -> str:
    """Display unit for a price of ``kind`` (prime, futures, flat, market)."""

    if kind in {"prime", "futures"}:
        return product_terms(product).quote_unit
    return "USD/MT"


def factor_discrepancies() -> dict[str, dict[str, object]]:
    out: dict[str, dict[str, object]] = {}
    for product, alternatives in FACTOR_DISCREPANCIES.items():
        out[product.value] = {
            "canonical": str(get_conversion_factor(product)),
            "alternatives": [str(a) for a in alternatives],
        }
    return out
