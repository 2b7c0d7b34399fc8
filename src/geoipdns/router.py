"""Turns DNS questions into geolocation answers."""

from __future__ import annotations

import logging
import random
import time
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import TYPE_CHECKING, Protocol

from dnslib import CLASS, QTYPE, RCODE, RR, TXT, DNSRecord

from geoipdns.errors import (
    AddressNotFoundError,
    LookupFailedError,
    ProtocolMismatchError,
    ResolutionError,
)
from geoipdns.formatter import OutputMode, format_fields, txt_strings
from geoipdns.resolver import HostResolver

if TYPE_CHECKING:
    from dnslib import DNSQuestion

    from geoipdns.database import Database

logger = logging.getLogger(__name__)

IPAddress = IPv4Address | IPv6Address


class Resolver(Protocol):
    """Forward resolution of hostnames."""

    async def resolve(self, hostname: str) -> list[IPAddress]:
        """Return the addresses of ``hostname``."""


class QueryRouter:
    """Answers TXT queries for ``<ip or hostname>[.<domain>]``.

    Example:
        router = QueryRouter(database, domain="geo.example.com")
        reply = await router.dispatch(DNSRecord.question(
            "8.8.8.8.geo.example.com", "TXT"))

    """

    def __init__(
        self,
        database: Database,
        *,
        resolver: Resolver | None = None,
        language: str = "en",
        domain: str = "",
        output_mode: OutputMode = OutputMode.JOINED,
        silent: bool = False,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            database: Where addresses are looked up.
            resolver: Resolves hostnames that are not literal addresses.
            language: Language code for localized names.
            domain: Suffix stripped from query names. Queries outside it
                are refused with NXDOMAIN. Empty to use whole names.
            output_mode: Layout of the TXT answer.
            silent: Do not log a line per request.
            rng: Picks among several addresses of a hostname.

        """
        self._database = database
        self._resolver = resolver or HostResolver()
        self._language = language
        self._domain = domain.strip(".").lower()
        self._output_mode = output_mode
        self._silent = silent
        self._rng = rng or random.Random()

    @property
    def domain(self) -> str:
        """The suffix stripped from query names."""
        return self._domain

    async def dispatch(self, request: DNSRecord) -> DNSRecord:
        """Answer a DNS request.

        Args:
            request: The parsed request.

        Returns:
            A reply with a single TXT answer, or with NXDOMAIN when the
            question is not answerable or the host does not resolve,
            SERVFAIL when the database has no usable record, or NOTIMP when
            the request does not hold exactly one question.

        """
        start = time.monotonic()

        if len(request.questions) != 1:
            reply = self._fail(request, RCODE.NOTIMP)
            self._log(request, reply, start)
            return reply

        try:
            reply = await self._answer(request, request.q)
        except (ProtocolMismatchError, ResolutionError) as e:
            logger.debug("Answering NXDOMAIN: %s", e)
            reply = self._fail(request, RCODE.NXDOMAIN)
        except (AddressNotFoundError, LookupFailedError) as e:
            logger.debug("Answering SERVFAIL: %s", e)
            reply = self._fail(request, RCODE.SERVFAIL)

        self._log(request, reply, start)
        return reply

    async def _answer(self, request: DNSRecord, question: DNSQuestion) -> DNSRecord:
        if question.qtype != QTYPE.TXT or question.qclass != CLASS.IN:
            msg = (
                f"Unsupported question type {QTYPE.get(question.qtype)} "
                f"class {CLASS.get(question.qclass)}"
            )
            raise ProtocolMismatchError(msg)

        token = self.extract_target(str(question.qname))
        address = await self._resolve_target(token)
        record = self._database.lookup(address)

        fields = format_fields(record, address, self._language)
        reply = request.reply()
        reply.add_answer(
            RR(
                rname=question.qname,
                rtype=QTYPE.TXT,
                rclass=CLASS.IN,
                ttl=0,
                rdata=TXT(txt_strings(fields, self._output_mode)),
            )
        )
        return reply

    def extract_target(self, qname: str) -> str:
        """Return the IP address or hostname a query name asks about.

        Args:
            qname: The query name, with or without the trailing dot.

        Returns:
            The name with the configured domain removed.

        Raises:
            ProtocolMismatchError: If the name is outside the domain or
                leaves nothing once it is removed.

        """
        name = qname.rstrip(".")
        if self._domain:
            suffix = "." + self._domain
            if not name.lower().endswith(suffix):
                msg = f"{qname} is not under {self._domain}"
                raise ProtocolMismatchError(msg)
            name = name[: -len(suffix)]
        if not name:
            msg = f"{qname} does not name an address"
            raise ProtocolMismatchError(msg)
        return name

    async def _resolve_target(self, token: str) -> IPAddress:
        try:
            return ip_address(token)
        except ValueError:
            pass
        addresses = await self._resolver.resolve(token)
        if not addresses:
            msg = f"{token} has no addresses"
            raise ResolutionError(msg)
        return self._rng.choice(addresses)

    def _fail(self, request: DNSRecord, rcode: int) -> DNSRecord:
        reply = request.reply()
        reply.header.rcode = rcode
        return reply

    def _log(self, request: DNSRecord, reply: DNSRecord, start: float) -> None:
        if self._silent:
            return
        elapsed = time.monotonic() - start
        rcode = reply.header.rcode
        outcome = "RESOLVED" if rcode == RCODE.NOERROR else RCODE.get(rcode)
        if request.questions:
            question = request.q
            logger.info(
                "Question: Type=%s Class=%s Name=%s (%s) %.3fms",
                QTYPE.get(question.qtype),
                CLASS.get(question.qclass),
                question.qname,
                outcome,
                elapsed * 1000,
            )
        else:
            logger.info("Request without question (%s) %.3fms", outcome, elapsed * 1000)
