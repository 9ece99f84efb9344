"""Fakes and sample data shared across feedsentry tests."""

from .fake_feeds import FakeFetcher, make_item, make_source

__all__ = ["FakeFetcher", "make_item", "make_source"]
