"""FeedSentry package.

Real-time collection of market news feeds: bounded parallel fetching,
quality filtering, source prioritization with feedback learning,
emergency and market-movement detection, and a bounded-latency emergency
response path.  Each component can be constructed and tested on its own;
:class:`feedsentry.orchestrator.CollectionOrchestrator` wires them together.
"""

__all__: list[str] = []
