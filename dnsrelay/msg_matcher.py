"""Matchers that test a query context's query or response."""

from __future__ import annotations

import dns.edns
import dns.message
import dns.rdatatype

from dnsrelay.domain import Matcher
from dnsrelay.elem import IntMatcher
from dnsrelay.netlist import NetMatcher
from dnsrelay.query_context import QueryContext


def _msg_ecs(msg: dns.message.Message) -> dns.edns.ECSOption | None:
    for option in msg.options:
        if isinstance(option, dns.edns.ECSOption):
            return option
    return None


class ClientIPMatcher:
    """Matches the client address of the request."""

    def __init__(self, ip_matcher: NetMatcher) -> None:
        self._ip_matcher = ip_matcher

    def match(self, qctx: QueryContext) -> bool:
        addr = qctx.req_meta.client_addr
        if addr is None:
            return False
        return self._ip_matcher.match(addr)


class ClientECSMatcher:
    """Matches the address of the query's EDNS client subnet option."""

    def __init__(self, ip_matcher: NetMatcher) -> None:
        self._ip_matcher = ip_matcher

    def match(self, qctx: QueryContext) -> bool:
        ecs = _msg_ecs(qctx.q)
        if ecs is None:
            return False
        return self._ip_matcher.match(ecs.address)


class QNameMatcher:
    """Matches the names of the query's questions."""

    def __init__(self, domain_matcher: Matcher) -> None:
        self._domain_matcher = domain_matcher

    def match(self, qctx: QueryContext) -> bool:
        return self.match_msg(qctx.q)

    def match_msg(self, msg: dns.message.Message) -> bool:
        return any(self._domain_matcher.match(q.name.to_text())[1] for q in msg.question)


class QTypeMatcher:
    """Matches the types of the query's questions."""

    def __init__(self, elem_matcher: IntMatcher) -> None:
        self._elem_matcher = elem_matcher

    def match(self, qctx: QueryContext) -> bool:
        return self.match_msg(qctx.q)

    def match_msg(self, msg: dns.message.Message) -> bool:
        return any(self._elem_matcher.match(int(q.rdtype)) for q in msg.question)


class QClassMatcher:
    """Matches the classes of the query's questions."""

    def __init__(self, elem_matcher: IntMatcher) -> None:
        self._elem_matcher = elem_matcher

    def match(self, qctx: QueryContext) -> bool:
        return self.match_msg(qctx.q)

    def match_msg(self, msg: dns.message.Message) -> bool:
        return any(self._elem_matcher.match(int(q.rdclass)) for q in msg.question)


class ResponseIPMatcher:
    """Matches the addresses of A and AAAA records in the response's answer."""

    def __init__(self, ip_matcher: NetMatcher) -> None:
        self._ip_matcher = ip_matcher

    def match(self, qctx: QueryContext) -> bool:
        if qctx.r is None:
            return False
        return self.match_msg(qctx.r)

    def match_msg(self, msg: dns.message.Message) -> bool:
        for rrset in msg.answer:
            if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
                continue
            for rdata in rrset:
                if self._ip_matcher.match(rdata.address):
                    return True
        return False


class CNameMatcher:
    """Matches the targets of CNAME records in the response's answer."""

    def __init__(self, domain_matcher: Matcher) -> None:
        self._domain_matcher = domain_matcher

    def match(self, qctx: QueryContext) -> bool:
        if qctx.r is None:
            return False
        return self.match_msg(qctx.r)

    def match_msg(self, msg: dns.message.Message) -> bool:
        for rrset in msg.answer:
            if rrset.rdtype != dns.rdatatype.CNAME:
                continue
            for rdata in rrset:
                if self._domain_matcher.match(rdata.target.to_text())[1]:
                    return True
        return False


class RCodeMatcher:
    """Matches the response code of the response."""

    def __init__(self, elem_matcher: IntMatcher) -> None:
        self._elem_matcher = elem_matcher

    def match(self, qctx: QueryContext) -> bool:
        if qctx.r is None:
            return False
        return self.match_msg(qctx.r)

    def match_msg(self, msg: dns.message.Message) -> bool:
        return self._elem_matcher.match(int(msg.rcode()))