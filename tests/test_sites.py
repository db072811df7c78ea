from __future__ import annotations

import pytest

from pricewatch.errors import ConfigError
from pricewatch.sites import GENERIC_KEY, SiteRegistry
from pricewatch.useragents import FALLBACK_AGENTS, UserAgentRotator, load_agents


@pytest.mark.parametrize(
    "url, key",
    [
        ("https://www.amazon.com/dp/B0TEST", "amazon"),
        ("https://amazon.co.uk/gp/product/B0TEST", "amazon"),
        ("https://www.burton.com/us/en/p/board", "burton"),
        ("https://www.bestbuy.com/site/tv/123.p", "bestbuy"),
        ("https://www.ebay.com/itm/42", "ebay"),
        ("https://shop.example.org/item", GENERIC_KEY),
        ("not a url", GENERIC_KEY),
    ],
)
def test_detect(url, key) -> None:
    assert SiteRegistry().detect(url).key == key


def test_generic_has_selectors_for_every_field() -> None:
    generic = SiteRegistry().generic
    assert generic.selectors_for("title")
    assert generic.selectors_for("price")
    assert generic.selectors_for("unknown") == ()


def test_register_overrides_rate_limit_and_keeps_selectors() -> None:
    registry = SiteRegistry.from_config({"amazon": {"rate_limit": {"min_ms": 100, "max_ms": 200}}})
    amazon = registry.get("amazon")
    assert (amazon.rate_limit.min_ms, amazon.rate_limit.max_ms) == (100, 200)
    assert amazon.rate_limit.max_backoff_ms == 30000
    assert amazon.selectors_for("title")[0] == "#productTitle"


def test_register_new_site() -> None:
    registry = SiteRegistry.from_config(
        {
            "rei": {
                "domains": ["REI.com"],
                "currency": "usd",
                "selectors": {"price": ["#buy-box-price"]},
            }
        }
    )
    site = registry.detect("https://www.rei.com/product/1")
    assert site.key == "rei"
    assert site.name == "Rei"
    assert site.selectors_for("price") == ("#buy-box-price",)
    assert site.selectors_for("title") == registry.generic.selectors_for("title")


@pytest.mark.parametrize(
    "raw",
    [
        {"rate_limit": {"min_ms": 500, "max_ms": 100}},
        {"rate_limit": {"min_ms": "fast"}},
        {"selectors": {"colour": ["#c"]}},
    ],
)
def test_register_rejects_bad_entries(raw) -> None:
    with pytest.raises(ConfigError):
        SiteRegistry().register("broken", raw)


def test_user_agents_never_repeat_back_to_back() -> None:
    rotator = UserAgentRotator(FALLBACK_AGENTS[:2])
    picks = [rotator.next() for _ in range(20)]
    assert all(a != b for a, b in zip(picks, picks[1:]))


def test_load_agents_falls_back_when_file_missing(tmp_path) -> None:
    assert load_agents(tmp_path / "missing.txt") == list(FALLBACK_AGENTS)
    agents_file = tmp_path / "agents.txt"
    agents_file.write_text("# comment\nAgent/1.0\n\nAgent/2.0\n", encoding="utf-8")
    assert load_agents(agents_file) == ["Agent/1.0", "Agent/2.0"]
