"""
Discovery race across candidate proxy addresses.

Probes every candidate address of a payload concurrently. The first
candidate to prove it holds the pinned certificate wins; every other probe
is cancelled and awaited before the race returns, so no connection
outlives it.
"""

import asyncio
from typing import Any, Optional, Union

import structlog

from .core.config import ProbeSettings
from .errors import AllCandidatesFailed, InvalidPayload, ProbeError
from .models.connection import ProxyConfiguration
from .prober import AddressProber
from .schemas.payload import CandidatePayload

logger = structlog.get_logger(__name__)


class DiscoveryRace:
    """
    Resolves a connect payload to a single verified proxy configuration.

    Probe failures are recovered here: only the aggregate outcome, a
    configuration or AllCandidatesFailed, leaves the race.
    """

    def __init__(
        self,
        prober: Optional[AddressProber] = None,
        settings: Optional[ProbeSettings] = None
    ):
        """
        Initialize the race.

        Args:
            prober: Prober used for each candidate (created from settings if not provided)
            settings: Probe settings (defaults to the prober's settings)
        """
        if settings is None:
            settings = prober.settings if prober is not None else ProbeSettings()
        self.settings = settings
        self.prober = prober or AddressProber(settings)

    async def race(self, payload: Union[CandidatePayload, dict[str, Any]]) -> ProxyConfiguration:
        """
        Find the candidate address that serves the pinned certificate.

        Args:
            payload: Connect payload, validated again before any probe starts

        Returns:
            Configuration of the first candidate that verified

        Raises:
            InvalidPayload: If the payload fails validation (no probe is launched)
            AllCandidatesFailed: If every candidate failed, with each one's error
        """
        payload = self._validate(payload)
        logger.debug(
            "Validating proxy candidates",
            addresses=list(payload.addresses),
            port=payload.port
        )

        if len(payload.addresses) == 1:
            return await self._probe_single(payload)
        return await self._probe_all(payload)

    def _validate(self, payload: Union[CandidatePayload, dict[str, Any]]) -> CandidatePayload:
        """Re-run payload validation, whatever built the payload."""
        data = payload.to_wire() if isinstance(payload, CandidatePayload) else payload
        validated = CandidatePayload.parse(data)

        if len(validated.addresses) > self.settings.max_candidates:
            raise InvalidPayload(
                f"Too many candidate addresses: {len(validated.addresses)} "
                f"(max {self.settings.max_candidates})"
            )
        return validated

    async def _probe_single(self, payload: CandidatePayload) -> ProxyConfiguration:
        """Probe a lone candidate directly."""
        address = payload.addresses[0]
        try:
            config = await self.prober.probe(address, payload.port, payload.cert_fingerprint)
        except ProbeError as e:
            raise self._all_failed(payload, {address: e}) from e

        logger.info("Proxy candidate accepted", address=config.address, port=config.port)
        return config

    async def _probe_all(self, payload: CandidatePayload) -> ProxyConfiguration:
        """Race one probe task per candidate, first success wins."""
        order = {address: index for index, address in enumerate(payload.addresses)}
        tasks: dict[asyncio.Task, str] = {
            asyncio.create_task(
                self.prober.probe(address, payload.port, payload.cert_fingerprint),
                name=f"probe {address}:{payload.port}"
            ): address
            for address in payload.addresses
        }
        errors: dict[str, ProbeError] = {}
        pending: set[asyncio.Task] = set(tasks)

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

                winner: Optional[ProxyConfiguration] = None
                # Simultaneous finishers resolve in payload order. An unexpected
                # exception in the same wake-up wins over any success.
                for task in sorted(done, key=lambda t: order[tasks[t]]):
                    error = task.exception()
                    if error is None:
                        if winner is None:
                            winner = task.result()
                    elif isinstance(error, ProbeError):
                        errors[tasks[task]] = error
                    else:
                        raise error

                if winner is not None:
                    logger.info(
                        "Proxy candidate accepted",
                        address=winner.address,
                        port=winner.port,
                        cancelled=len(pending)
                    )
                    return winner
        finally:
            await _cancel_all(pending)

        raise self._all_failed(payload, errors)

    @staticmethod
    def _all_failed(payload: CandidatePayload, errors: dict[str, ProbeError]) -> AllCandidatesFailed:
        """Build the aggregate failure, keeping payload order."""
        ordered = {address: errors[address] for address in payload.addresses if address in errors}
        failure = AllCandidatesFailed(ordered)
        logger.warning(
            "No proxy candidate succeeded",
            port=payload.port,
            failures={address: error.kind for address, error in ordered.items()}
        )
        return failure


async def _cancel_all(tasks: set[asyncio.Task]) -> None:
    """Cancel tasks and wait until every one has finished."""
    if not tasks:
        return
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
