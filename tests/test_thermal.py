# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for the thermal gate and the sampling loop, driven by a fake clock.
"""
from unittest.mock import MagicMock

import pytest


class ScriptedMetrics:
    """Metrics source replaying a temperature script, then holding the last value."""

    def __init__(self, temps, freq=4800):
        self.temps = list(temps)
        self.freq = freq
        self.reads = 0

    def temperature(self, domain):
        value = self.temps[min(self.reads, len(self.temps) - 1)]
        self.reads += 1
        return value

    def temperatures(self, domains):
        return [self.temperature(d) for d in domains]

    def frequency(self, cpu):
        return self.freq

    def frequencies(self, cpus):
        return [self.freq for _ in cpus]


class TestThermalGate:
    """Tests for baseline recovery between same-CCD units."""

    def _gate(self, ch, clock, temps, **kwargs):
        return ch.ThermalGate(ScriptedMetrics(temps), clock=clock, sleep=clock.sleep, **kwargs)

    def test_required_samples(self, ch, clock):
        """Required consecutive readings is min_stable // poll, at least 1."""
        assert self._gate(ch, clock, [0]).required_samples == 5
        assert self._gate(ch, clock, [0], min_stable_s=1, poll_s=2).required_samples == 1

    def test_already_cool_is_stable(self, ch, clock):
        """A CCD already at baseline is stable after required readings."""
        result = self._gate(ch, clock, [45.0]).wait(0, 45.0)
        assert result.state is ch.GateState.STABLE
        assert result.stable_count == 5
        assert result.elapsed_s == 8.0

    def test_cools_then_stable(self, ch, clock):
        """Readings above tolerance reset the counter until recovery."""
        temps = [70.0, 60.0, 52.0, 46.5, 46.0, 45.5, 45.0, 45.0]
        result = self._gate(ch, clock, temps).wait(0, 44.0)
        assert result.stable
        assert result.temperature_c == 45.0
        # first in-tolerance reading is the 5th poll (t=8s); 5 in a row end at t=16s
        assert result.elapsed_s == 16.0

    def test_excursion_resets_counter(self, ch, clock):
        """One reading above tolerance restarts the stable count."""
        temps = [45.0, 45.0, 45.0, 45.0, 50.0, 45.0, 45.0, 45.0, 45.0, 45.0]
        result = self._gate(ch, clock, temps).wait(0, 45.0)
        assert result.stable
        assert result.elapsed_s == 18.0

    def test_timeout_exactly_at_max_wait(self, ch, clock):
        """A CCD that never cools times out at max_wait and the caller proceeds."""
        result = self._gate(ch, clock, [80.0]).wait(1, 45.0)
        assert result.state is ch.GateState.TIMED_OUT
        assert result.elapsed_s == 120.0
        assert result.temperature_c == 80.0
        assert result.stable_count == 0
        assert not result.stable

    def test_tolerance_boundary_counts(self, ch, clock):
        """baseline + tolerance exactly is within tolerance."""
        result = self._gate(ch, clock, [47.0], min_stable_s=2, poll_s=2).wait(0, 45.0)
        assert result.stable
        assert result.elapsed_s == 0.0


class TestSamplingLoop:
    """Tests for periodic sampling."""

    def _loop(self, ch, clock, rates, topology=None, interval=5.0):
        throughput = MagicMock()
        throughput.read.side_effect = list(rates)
        topology = topology or ch.synthetic_topology(16)
        return ch.SamplingLoop(ScriptedMetrics([55.0]), throughput, topology, interval_s=interval,
                               clock=clock, wallclock=clock, sleep=clock.sleep)

    def test_sample_count(self, ch, clock):
        """30s at a 5s interval yields 6 samples."""
        loop = self._loop(ch, clock, [1000.0] * 6)
        samples = loop.run(ch.TestUnit(0, (0, 16), 0, 2), 30)
        assert len(samples) == 6

    def test_samples_time_ordered(self, ch, clock):
        """Timestamps strictly increase and carry unit and domain."""
        loop = self._loop(ch, clock, [1000.0] * 6)
        samples = loop.run(ch.TestUnit(9, (9, 25), 1, 2), 30)
        stamps = [s.timestamp for s in samples]
        assert stamps == sorted(set(stamps))
        assert all(s.unit_id == 9 and s.thermal_domain == 1 for s in samples)
        assert samples[0].frequency_mhz == 4800
        assert samples[0].temperature_c == 55.0

    def test_wallclock_step_back_clamped(self, ch, clock):
        """A wall clock stepping backwards never makes timestamps decrease."""
        stamps = iter([500.0, 505.0, 490.0, 512.0])
        throughput = MagicMock()
        throughput.read.return_value = 1000.0
        loop = ch.SamplingLoop(ScriptedMetrics([55.0]), throughput, ch.synthetic_topology(16),
                               interval_s=5.0, clock=clock, wallclock=lambda: next(stamps),
                               sleep=clock.sleep)
        samples = loop.run(ch.TestUnit(0, (0, 16), 0, 2), 20)
        assert [s.timestamp for s in samples] == [500.0, 505.0, 505.0, 512.0]

    @pytest.mark.parametrize("duration,interval,expected", [(10, 5, 2), (11, 5, 3), (5, 10, 1)])
    def test_terminates_on_elapsed(self, ch, clock, duration, interval, expected):
        """The loop runs until elapsed reaches the duration."""
        loop = self._loop(ch, clock, [1.0] * expected, interval=interval)
        assert len(loop.run(ch.TestUnit(0, (0, 16), 0, 2), duration)) == expected

    def test_unavailable_hashrate_recorded(self, ch, clock):
        """An unavailable reading is kept as a sample with hashrate None."""
        loop = self._loop(ch, clock, [1000.0, None])
        samples = loop.run(ch.TestUnit(0, (0, 16), 0, 2), 10)
        assert samples[1].hashrate is None
        assert not samples[1].measured

    def test_on_sample_callback(self, ch, clock):
        """Every sample is handed to on_sample as it is taken."""
        seen = []
        loop = self._loop(ch, clock, [1.0, 2.0])
        loop.run(ch.TestUnit(0, (0, 16), 0, 2), 10, on_sample=seen.append)
        assert [s.hashrate for s in seen] == [1.0, 2.0]

    def test_all_core_reads_lists(self, ch, clock):
        """All-core samples hold one clock per core and one temperature per CCD."""
        topology = ch.synthetic_topology(16)
        loop = self._loop(ch, clock, [9000.0], topology=topology, interval=10)
        samples = loop.run(ch.TestUnit("all-core", (), None, 32), 10)
        assert len(samples[0].frequency_mhz) == 16
        assert samples[0].temperature_c == [55.0, 55.0]


class TestProgressLine:
    """Tests for progress formatting."""

    def test_measured_line(self, ch):
        """Measured samples show the ⚡ marker with rate, clock and temperature."""
        line = ch.format_progress(ch.Sample(0.0, 3, 0, 1523.4, 5100, 61.2), 15, 45)
        assert line.startswith("⚡ 15s: 1523.4 H/s")
        assert "Core 3 @ 5100 MHz" in line
        assert "CCD0: 61.2°C" in line
        assert line.endswith("45s remaining")

    def test_unavailable_line(self, ch):
        """Unavailable samples show the ⏳ marker."""
        line = ch.format_progress(ch.Sample(0.0, 3, 0, None, 5100, 61.2), 5, 55)
        assert line.startswith("⏳ 5s: API unavailable")
