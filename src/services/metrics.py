from prometheus_client import Counter, Histogram

ticks_counter = Counter("hma_monitor_ticks_total", "Scheduler ticks processed")
quote_failures_counter = Counter("hma_monitor_quote_failures_total", "Bulk quote requests that failed")
crossovers_counter = Counter("hma_monitor_crossovers_total", "Crossover signals detected")
entries_counter = Counter("hma_monitor_entries_total", "Confirmed entries executed")
exits_counter = Counter("hma_monitor_exits_total", "Exits executed", ["rule"])
orders_counter = Counter("hma_monitor_orders_total", "Orders submitted", ["side"])
tick_duration = Histogram("hma_monitor_tick_seconds", "Scheduler tick duration seconds")
