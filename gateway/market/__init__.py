from .top_symbols import fetch_top_symbols, rank_usdt_symbols

__all__ = ["fetch_top_symbols", "rank_usdt_symbols"]
