# app/core/dispatch/__init__.py
"""
Dispatch engine: ranking, metered batches and delivery routing.

- ``ranking``: CandidateRanker (score, order, skill quotas)
- ``scheduler``: DispatchScheduler (batch sizing, headcount stop, debit)
- ``router``: DeliveryRouter (push first, SMS fallback)
- ``services``: DispatchService orchestration + singleton wiring
- ``jobs``: task handlers for the in-process worker
"""
