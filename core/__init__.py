"""
Shared plumbing for the ledger and rules packages:
settings, logging, errors, money arithmetic and the transactional store.
"""
