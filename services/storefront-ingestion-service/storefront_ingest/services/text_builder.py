from __future__ import annotations

from storefront_ingest.schemas.content import PageContent, PriceRange, ProductCard


def _format_amount(value: float) -> str:
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return str(number)


def _format_price(price: PriceRange) -> str:
    symbol = "$" if price.currency == "USD" else price.currency
    if price.min == price.max:
        return f"Price: {symbol}{_format_amount(price.min)}"
    return f"Price Range: {symbol}{_format_amount(price.min)} - {symbol}{_format_amount(price.max)}"


def build_product_text(product: ProductCard) -> str:
    parts = [f"Product: {product.title}"]
    if product.sku:
        parts.append(f"SKU: {product.sku}")
    if product.brand:
        parts.append(f"Brand: {product.brand}")
    parts.append(f"Description: {product.summary}")
    if product.categories:
        parts.append(f"Categories: {', '.join(product.categories)}")
    if product.tags:
        parts.append(f"Tags: {', '.join(product.tags)}")
    attribute_parts = [f"{name}: {', '.join(values)}" for name, values in product.attributes.items()]
    if attribute_parts:
        parts.append(f"Attributes: {'; '.join(attribute_parts)}")
    if product.variation_attributes:
        parts.append(f"Available Variations: {', '.join(product.variation_attributes)}")
    if product.price_range is not None:
        parts.append(_format_price(product.price_range))
    return "\n".join(parts)


def build_page_text(page: PageContent) -> str:
    return f"Page: {page.title}\n\n{page.content}"
