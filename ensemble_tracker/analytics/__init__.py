"""
Read-only analytics over stored trackers and portfolios.

Modules
-------
performance : summarize() pure reducer + PerformanceAnalyzer (per user).
peer        : compare_to_cohort() pure ranking + PeerComparator.
health      : compute_health_score() pure scoring + value_holdings()
              + PortfolioHealthAnalyzer (health score, snapshots).
"""
