"""
Ensemble layer: fans one analysis request out to several prediction models
and folds whatever comes back in time into a single consensus.

Modules
-------
invoker    : ModelInvoker protocol + OllamaInvoker (httpx) + parse_model_text()
             + build_invokers() + check_model_health().
aggregator : EnsembleAggregator (asyncio fan-out, per-call and overall
             timeouts) + build_consensus(), the pure voting reducer.
observer   : VerdictObserver protocol + LoggingObserver +
             ModelResponseLogObserver (audit table).
"""
