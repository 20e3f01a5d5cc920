from tradeledger.persistence.interfaces.ledger_store import LedgerStoreProtocol

__all__ = ["LedgerStoreProtocol"]
