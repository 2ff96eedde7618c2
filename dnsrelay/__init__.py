"""DNS forwarding building blocks: domain and IP matchers, query context, servers and upstreams."""

__version__ = "0.1.0"

__all__ = [
    "domain",
    "domain_loader",
    "elem",
    "entry_handler",
    "http_handler",
    "msg_matcher",
    "netlist",
    "netlist_loader",
    "query_context",
    "server",
    "transport",
    "upstream",
]