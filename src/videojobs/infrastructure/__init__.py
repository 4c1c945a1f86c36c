"""Infrastructure adapters: queue storage, asset downloads and result storage."""
