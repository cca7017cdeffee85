from .feed import PriceFeed, QuotePriceFeed, clean_symbols

__all__ = ["PriceFeed", "QuotePriceFeed", "clean_symbols"]
