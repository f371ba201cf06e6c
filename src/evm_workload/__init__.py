"""Wallet generation, funding and continuous transfer load for EVM networks."""
