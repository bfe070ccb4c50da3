"""Buyer-gating module -- distribution, ledger, funnel, bulk decisions and progression.

Provides Pydantic schemas and SQLAlchemy models for listings, distributions,
recipients and per-buyer ledger entries, the GateRepository contract with its
SQL implementation, and the services built on it: DistributionRegistry,
ResponseLedger, FunnelAggregator, BulkOperationExecutor and
DealProgressionController.
"""
