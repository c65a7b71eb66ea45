"""Flash-loan arbitrage: quote scanning, gas ceilings and private-relay submission."""
