"""Ordered CSS selector lists per supported site.

Selectors are tried in order and the first one yielding non-empty text
wins, so put the most specific selector first.
"""

from __future__ import annotations

# Any one of these appearing means the product page has rendered enough.
READY_SELECTORS = [
    "h1",
    "[itemprop='price']",
    "[itemprop='name']",
    "script[type='application/ld+json']",
]

JSON_LD_SELECTOR = "script[type='application/ld+json']"

AMAZON = {
    "title": [
        "#productTitle",
        "#title",
        ".product-title-word-break",
        "h1.a-size-large",
        "h1 span#productTitle",
        "[data-feature-name='title'] h1",
        "h1",
    ],
    "price": [
        ".a-price > .a-offscreen",
        "#priceblock_ourprice",
        "#priceblock_dealprice",
        ".a-price .a-offscreen:first-child",
        "span.a-price-whole",
        ".a-color-price",
        "#price_inside_buybox",
        ".apexPriceToPay .a-offscreen",
    ],
    "availability": [
        "#availability span",
        "#outOfStock",
        ".a-color-success",
    ],
    "image": [
        "#landingImage",
        "#imgBlkFront",
        ".a-dynamic-image",
    ],
}

BURTON = {
    "title": [
        "h1.product-name",
        ".product-name",
        "h1.pdp-title",
        ".product-title",
        "[data-product-title]",
        "h1",
    ],
    "price": [
        "span.standard-price",
        ".price-value",
        ".product-price",
        "[data-product-price]",
        ".price",
        "span[itemprop='price']",
        ".pdp-price",
    ],
    "availability": [
        ".availability-message",
        ".in-stock",
        ".out-of-stock",
        "[data-availability]",
    ],
    "image": [
        ".product-image img",
        "[data-product-image]",
        "img.primary-image",
    ],
}

WALMART = {
    "title": [
        "h1[itemprop='name']",
        "h1.prod-ProductTitle",
        "[data-automation-id='product-title']",
        "h1",
    ],
    "price": [
        "[itemprop='price']",
        ".price-characteristic",
        "[data-automation-id='product-price'] span",
        ".price-group",
    ],
    "availability": [
        ".prod-fulfillment-shipping-text",
        "[data-automation-id='fulfillment-shipping']",
        ".fulfillment-shipping-text",
    ],
    "image": [
        "[data-automation-id='hero-image'] img",
        ".hover-zoom-hero-image img",
    ],
}

TARGET = {
    "title": [
        "h1[data-test='product-title']",
        "h1.Heading",
        "[data-test='@web/ProductDetailPage/Title']",
        "h1",
    ],
    "price": [
        "[data-test='product-price']",
        ".styles__CurrentPriceFontSize",
        "[data-test='@web/ProductDetailPage/SalePrice']",
    ],
    "availability": [
        "[data-test='fulfillment-cell']",
        ".styles__StyledFulfillmentSection",
    ],
    "image": [
        "[data-test='product-image'] img",
        "picture img",
    ],
}

BESTBUY = {
    "title": [
        ".sku-title h1",
        "h1.heading-5",
        "[data-track='product-title']",
        "h1",
    ],
    "price": [
        ".priceView-hero-price span",
        ".priceView-customer-price span",
        "[data-track='product-price']",
    ],
    "availability": [
        ".fulfillment-fulfillment-summary",
        "[data-track='pickup-availability']",
    ],
    "image": [
        ".primary-image",
        "img.product-image",
    ],
}

EBAY = {
    "title": [
        "h1.x-item-title__mainTitle",
        "h1[itemprop='name']",
        "#itemTitle",
        "h1",
    ],
    "price": [
        ".x-price-primary span",
        "#prcIsum",
        "[itemprop='price']",
        ".vi-VR-cvipPrice",
    ],
    "availability": [
        "#qtySubTxt",
        ".d-quantity__availability",
        "#vi-quantity",
    ],
    "image": [
        "#icImg",
        "[data-zoom-src]",
        ".ux-image-magnify__container img",
    ],
}

GENERIC = {
    "title": [
        "h1[itemprop='name']",
        "[itemprop='name']",
        "h1.product-title",
        "h1.product-name",
        ".product-title",
        ".product-name",
        "h1",
    ],
    "price": [
        "[itemprop='price']",
        ".price",
        ".product-price",
        ".current-price",
        ".sale-price",
        ".regular-price",
        "[data-price]",
        ".price-value",
    ],
    "availability": [
        "[itemprop='availability']",
        ".availability",
        ".stock-status",
        ".in-stock",
        ".out-of-stock",
    ],
    "image": [
        "[itemprop='image']",
        ".product-image img",
        "#product-image",
        "img.product",
    ],
}

FIELDS = ("title", "price", "availability", "image")
