"""Policy arbitrage engine: find peer-country policies worth piloting at home."""
