"""Client-side connectivity layer for the elder health-monitoring dashboard.

This package decides which backend deployment to talk to, keeps the real-time
event channel alive across flaky networks, and governs how long a credential
survives restarts. UI, routing and business logic live elsewhere and only
consume a base URL, a stream of typed events and a present/absent credential.
"""
