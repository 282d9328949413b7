import importlib

CRITICAL_IMPORTS = [
    ("src.config", "settings"),
    ("src.engine.hma", "compute_hma"),
    ("src.engine.candle_store", "CandleStore"),
    ("src.engine.crossover", "evaluate_exit"),
    ("src.execution.execution", "OrderExecutionService"),
    ("src.persistence.db", "Database"),
    ("src.persistence.monitor_state", "MonitorStatePersistence"),
    ("src.providers.broker_rest", "UpstoxMarketData"),
    ("src.services.monitoring_service", "MonitoringEngine"),
    ("src.app", "app"),
]

def test_critical_imports():
    missing = []
    for module_name, symbol in CRITICAL_IMPORTS:
        module = importlib.import_module(module_name)
        if not hasattr(module, symbol):
            missing.append(f"{module_name}:{symbol}")
    assert not missing, f"Missing symbols: {missing}"


def test_settings_defaults():
    from src.config import settings
    assert settings.HMA_PERIOD == 55
    assert settings.HMA_REQUIRED_CANDLES == 60
    assert settings.MONITOR_BATCH_SIZE == 2
