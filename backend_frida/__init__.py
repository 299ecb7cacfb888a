"""
Backend Frida: transaction-linking engine for fraud scoring.

Links transactions that share identifying attributes (email, phone, device,
payment instrument) through match nodes, resolves direct and transitive
connections, and turns them into graph features for the rule-based scorer.
Modular architecture: database backends, analysis engine, agent worker.
"""

__version__ = "0.1.0"
