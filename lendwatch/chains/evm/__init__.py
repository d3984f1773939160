"""EVM loan broker client."""
from .client import LoanBrokerClient, classify_chain_error

__all__ = ["LoanBrokerClient", "classify_chain_error"]
