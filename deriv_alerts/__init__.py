"""
Deriv price alerts.

Streams live ticks from the Deriv websocket API and raises notifications when
user-defined price thresholds are crossed. The streaming core lives in
``deriv_alerts.live``; run it via: python -m deriv_alerts.live.app --config <yaml>
"""

__version__ = "0.3.0"
