"""Filter-driven chain rescans and batched UTXO spend lookups for light clients."""

__version__ = "0.1.0"
__all__ = ["chain", "options", "engine", "rescan", "utxoscanner"]