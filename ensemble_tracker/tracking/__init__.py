"""
Recommendation tracking: turning ensemble results into stored
recommendations, and recording what happened to them afterwards.

Modules
-------
factory : RecommendationFactory — create() + create_fallback(); pure construction.
outcome : score_outcome() pure scoring + TrackerLocks + OutcomeRecorder
          (record_action / evaluate / evaluate_due).
"""
