# Services module
from stockcount.services.count_service import CountingService
from stockcount.services.audit_ledger import AuditLedger
from stockcount.services.count_log_service import CountLogAggregator
from stockcount.services.divergence import DivergenceEvaluator
from stockcount.services.item_registry import ItemRegistry
from stockcount.services.round_gate import RoundGate
from stockcount.services.stock_oracle import StockOracle, HttpStockOracle, get_stock_oracle

__all__ = [
    "CountingService",
    "AuditLedger",
    "CountLogAggregator",
    "DivergenceEvaluator",
    "ItemRegistry",
    "RoundGate",
    "StockOracle",
    "HttpStockOracle",
    "get_stock_oracle",
]
