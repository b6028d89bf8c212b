"""Tests for the discovery race."""

import asyncio

import pytest

from proxylink.core.config import ProbeSettings
from proxylink.errors import (
    AllCandidatesFailed,
    FingerprintMismatch,
    InvalidPayload,
    ProbeConnectionRefused,
    ProbeTimeout,
    UnexpectedResponse,
)
from proxylink.fingerprint import fingerprint
from proxylink.models.connection import ProxyConfiguration
from proxylink.prober import AddressProber
from proxylink.race import DiscoveryRace
from proxylink.schemas import CandidatePayload

from conftest import FakeProxy, unused_port


class ScriptedProber:
    """Prober whose outcome per address is a coroutine function."""

    def __init__(self, outcomes, settings=None):
        self.outcomes = outcomes
        self.settings = settings or ProbeSettings()
        self.started: list[str] = []
        self.cancelled: list[str] = []
        self.finished: list[str] = []

    async def probe(self, address, port, expected_fingerprint, timeout=None):
        self.started.append(address)
        try:
            return await self.outcomes[address](address, port)
        except asyncio.CancelledError:
            self.cancelled.append(address)
            raise
        finally:
            self.finished.append(address)


def succeed_after(delay, certificate):
    async def outcome(address, port):
        await asyncio.sleep(delay)
        return ProxyConfiguration(address=address, port=port, certificate=certificate)
    return outcome


def fail_after(delay, error_class=ProbeConnectionRefused):
    async def outcome(address, port):
        await asyncio.sleep(delay)
        raise error_class(address, port, "scripted failure")
    return outcome


def hang():
    async def outcome(address, port):
        await asyncio.Event().wait()
    return outcome


@pytest.fixture
def payload_for(proxy_cert):
    def build(*addresses, port=8000):
        return CandidatePayload(
            addresses=addresses,
            port=port,
            cert_fingerprint=fingerprint(proxy_cert),
        )
    return build


class TestDiscoveryRace:
    """Tests for DiscoveryRace.race()."""

    @pytest.mark.asyncio
    async def test_first_success_wins_and_losers_cancelled(self, proxy_cert, payload_for):
        """Test the fastest verified candidate wins and the rest are cancelled."""
        prober = ScriptedProber({
            "10.0.0.1": hang(),
            "10.0.0.2": succeed_after(0.01, proxy_cert),
        })
        race = DiscoveryRace(prober)

        config = await race.race(payload_for("10.0.0.1", "10.0.0.2"))

        assert config.address == "10.0.0.2"
        assert config.port == 8000
        assert prober.cancelled == ["10.0.0.1"]
        # Every probe has finished by the time the race returns
        assert sorted(prober.finished) == ["10.0.0.1", "10.0.0.2"]

    @pytest.mark.asyncio
    async def test_failures_do_not_block_later_success(self, proxy_cert, payload_for):
        prober = ScriptedProber({
            "10.0.0.1": fail_after(0, ProbeConnectionRefused),
            "10.0.0.2": fail_after(0.01, UnexpectedResponse),
            "10.0.0.3": succeed_after(0.05, proxy_cert),
        })

        config = await DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2", "10.0.0.3"))

        assert config.address == "10.0.0.3"
        assert prober.cancelled == []

    @pytest.mark.asyncio
    async def test_slow_candidate_does_not_delay_winner(self, proxy_cert, payload_for):
        """Test a hanging candidate does not hold up a responsive one."""
        prober = ScriptedProber({
            "10.0.0.1": hang(),
            "10.0.0.2": succeed_after(0, proxy_cert),
        })

        config = await asyncio.wait_for(
            DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2")),
            timeout=1.0
        )
        assert config.address == "10.0.0.2"

    @pytest.mark.asyncio
    async def test_simultaneous_success_prefers_payload_order(self, proxy_cert, payload_for):
        prober = ScriptedProber({
            "10.0.0.1": succeed_after(0, proxy_cert),
            "10.0.0.2": succeed_after(0, proxy_cert),
        })

        config = await DiscoveryRace(prober).race(payload_for("10.0.0.2", "10.0.0.1"))
        assert config.address == "10.0.0.2"

    @pytest.mark.asyncio
    async def test_all_candidates_failed(self, payload_for):
        """Test every per-candidate error is reported, in payload order."""
        prober = ScriptedProber({
            "10.0.0.1": fail_after(0.02, ProbeTimeout),
            "10.0.0.2": fail_after(0, ProbeConnectionRefused),
            "10.0.0.3": fail_after(0.01, UnexpectedResponse),
        })

        with pytest.raises(AllCandidatesFailed) as exc_info:
            await DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2", "10.0.0.3"))

        error = exc_info.value
        assert list(error.errors) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert isinstance(error.errors["10.0.0.1"], ProbeTimeout)
        assert isinstance(error.errors["10.0.0.2"], ProbeConnectionRefused)
        assert {"timeout", "connection_refused"} <= error.kinds
        assert str(error).startswith("No candidate proxy address succeeded")

    @pytest.mark.asyncio
    async def test_single_candidate(self, proxy_cert, payload_for):
        prober = ScriptedProber({"10.0.0.1": succeed_after(0, proxy_cert)})

        config = await DiscoveryRace(prober).race(payload_for("10.0.0.1"))
        assert config.address == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_single_candidate_failure(self, payload_for):
        prober = ScriptedProber({"10.0.0.1": fail_after(0, ProbeTimeout)})

        with pytest.raises(AllCandidatesFailed) as exc_info:
            await DiscoveryRace(prober).race(payload_for("10.0.0.1"))

        assert list(exc_info.value.errors) == ["10.0.0.1"]
        assert exc_info.value.kinds == {"timeout"}

    @pytest.mark.asyncio
    async def test_empty_payload_launches_no_probes(self, proxy_cert):
        """Test a payload built without validation is still rejected."""
        prober = ScriptedProber({})
        payload = CandidatePayload.model_construct(
            addresses=(),
            port=8000,
            cert_fingerprint=fingerprint(proxy_cert),
        )

        with pytest.raises(InvalidPayload):
            await DiscoveryRace(prober).race(payload)

        assert prober.started == []

    @pytest.mark.asyncio
    async def test_raw_payload_validated(self, proxy_cert):
        prober = ScriptedProber({"10.0.0.1": succeed_after(0, proxy_cert)})
        race = DiscoveryRace(prober)

        with pytest.raises(InvalidPayload):
            await race.race({"addresses": ["10.0.0.1"], "port": 0, "certFingerprint": fingerprint(proxy_cert)})
        assert prober.started == []

        config = await race.race({
            "addresses": ["10.0.0.1"],
            "port": 8000,
            "certFingerprint": fingerprint(proxy_cert),
        })
        assert config.address == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_userinfo_address_never_probed(self, proxy_cert):
        """Test an address smuggling another host through userinfo is refused."""
        prober = ScriptedProber({"127.0.0.1": succeed_after(0, proxy_cert)})

        with pytest.raises(InvalidPayload):
            await DiscoveryRace(prober).race({
                "addresses": ["10.9.9.9@127.0.0.1", "127.0.0.1"],
                "port": 8000,
                "certFingerprint": fingerprint(proxy_cert),
            })

        assert prober.started == []

    @pytest.mark.asyncio
    async def test_too_many_candidates(self, payload_for):
        prober = ScriptedProber({}, settings=ProbeSettings(max_candidates=2))

        with pytest.raises(InvalidPayload, match="Too many candidate addresses"):
            await DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2", "10.0.0.3"))

        assert prober.started == []

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, payload_for):
        """Test a non-probe error aborts the race and cancels the others."""
        async def broken(address, port):
            raise RuntimeError("bug")

        prober = ScriptedProber({"10.0.0.1": hang(), "10.0.0.2": broken})

        with pytest.raises(RuntimeError, match="bug"):
            await DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2"))

        assert prober.cancelled == ["10.0.0.1"]

    @pytest.mark.asyncio
    async def test_unexpected_error_beats_simultaneous_success(self, proxy_cert, payload_for):
        """Test a bug finishing alongside a success is raised, not hidden."""
        async def broken(address, port):
            await asyncio.sleep(0)
            raise RuntimeError("bug")

        prober = ScriptedProber({
            "10.0.0.1": succeed_after(0, proxy_cert),
            "10.0.0.2": broken,
            "10.0.0.3": hang(),
        })

        with pytest.raises(RuntimeError, match="bug"):
            await DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2", "10.0.0.3"))

        assert prober.cancelled == ["10.0.0.3"]

    @pytest.mark.asyncio
    async def test_cancelling_race_cancels_probes(self, payload_for):
        prober = ScriptedProber({"10.0.0.1": hang(), "10.0.0.2": hang()})
        task = asyncio.create_task(DiscoveryRace(prober).race(payload_for("10.0.0.1", "10.0.0.2")))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sorted(prober.cancelled) == ["10.0.0.1", "10.0.0.2"]


class TestDiscoveryRaceNetwork:
    """Races against real sockets."""

    @pytest.mark.asyncio
    async def test_cancelled_probe_closes_connection(self, proxy_cert, fake_proxy_factory):
        """Test a probe cancelled mid-request hangs up on the candidate."""
        slow = await fake_proxy_factory(FakeProxy.serving(proxy_cert, delay=10))
        prober = AddressProber(ProbeSettings(connect_timeout=5, read_timeout=5))

        probe = asyncio.create_task(prober.probe("127.0.0.1", slow.port, fingerprint(proxy_cert)))
        while not slow.requests:
            await asyncio.sleep(0.01)

        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        await asyncio.wait_for(slow.hung_up.wait(), timeout=2.0)

    @pytest.mark.asyncio
    async def test_wrong_proxy_and_refused_address(self, proxy_cert, other_cert, fake_proxy_factory):
        """Test a race where one address serves another key and one is closed."""
        wrong = await fake_proxy_factory(FakeProxy.serving(other_cert))
        race = DiscoveryRace(AddressProber(ProbeSettings(connect_timeout=1, read_timeout=1)))
        payload = CandidatePayload(
            addresses=("127.0.0.1", "127.0.0.2"),
            port=wrong.port,
            cert_fingerprint=fingerprint(proxy_cert),
        )

        with pytest.raises(AllCandidatesFailed) as exc_info:
            await race.race(payload)

        errors = exc_info.value.errors
        assert list(errors) == ["127.0.0.1", "127.0.0.2"]
        assert isinstance(errors["127.0.0.1"], FingerprintMismatch)

    @pytest.mark.asyncio
    async def test_refused_candidate(self, proxy_cert):
        race = DiscoveryRace(AddressProber(ProbeSettings(connect_timeout=1, read_timeout=1)))
        payload = CandidatePayload(
            addresses=("127.0.0.1",),
            port=unused_port(),
            cert_fingerprint=fingerprint(proxy_cert),
        )

        with pytest.raises(AllCandidatesFailed) as exc_info:
            await race.race(payload)

        assert exc_info.value.kinds == {"connection_refused"}
