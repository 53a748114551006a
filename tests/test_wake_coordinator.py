#!/usr/bin/env python3
"""Tests for the wake coordination state machine."""

import asyncio
import copy
import time
import unittest

from wake_proxy.config_manager import ConfigManager
from wake_proxy.deployment_controller import DeploymentRef
from wake_proxy.health_oracle import HealthResult, HealthStatus
from wake_proxy.wake_coordinator import WakeCoordinator, WakeDecision, ConnectionIntent


def make_config(cooldown=60, request_timeout=5):
    config = copy.deepcopy(ConfigManager()._get_default_config())
    config['timing']['cooldown_seconds'] = cooldown
    config['timing']['request_timeout'] = request_timeout
    return config


class FakeHealthOracle:
    """Health oracle returning a fixed answer."""

    def __init__(self, running=False, yield_first=False, error=None):
        self.running = running
        self.yield_first = yield_first
        self.error = error
        self.calls = 0

    async def check(self):
        self.calls += 1
        if self.yield_first:
            await asyncio.sleep(0)
        if self.error:
            raise self.error
        status = HealthStatus.RUNNING if self.running else HealthStatus.NOT_RUNNING
        return HealthResult(status, http_status=200 if self.running else 503)


class FakeDeploymentController:
    """Deployment controller recording the calls it receives."""

    def __init__(self, deployment=DeploymentRef('d1', 'game.up.railway.app'),
                 restart_ok=True, lookup_delay=0.0, restart_delay=0.0,
                 lookup_error=None, restart_error=None):
        self.deployment = deployment
        self.restart_ok = restart_ok
        self.lookup_delay = lookup_delay
        self.restart_delay = restart_delay
        self.lookup_error = lookup_error
        self.restart_error = restart_error
        self.lookups = 0
        self.restarts = []

    async def latest_deployment(self):
        self.lookups += 1
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        if self.lookup_error:
            raise self.lookup_error
        return self.deployment

    async def restart(self, deployment):
        self.restarts.append(deployment.id)
        if self.restart_delay:
            await asyncio.sleep(self.restart_delay)
        if self.restart_error:
            raise self.restart_error
        return self.restart_ok


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


INTENT = ConnectionIntent(raw_token='Steve')


class TestWakeCoordinator(unittest.IsolatedAsyncioTestCase):
    """Test wake decisions and lock handling."""

    def build(self, config=None, health=None, controller=None, clock=time.time):
        self.config = config or make_config()
        self.messages = self.config['messages']
        self.health = health or FakeHealthOracle()
        self.controller = controller or FakeDeploymentController()
        self.coordinator = WakeCoordinator(self.config, self.health, self.controller, clock=clock)
        return self.coordinator

    async def test_fresh_wake_success(self):
        """Server down, fresh state, restart succeeds."""
        coordinator = self.build(config=make_config(cooldown=0.2))

        response = await coordinator.handle(INTENT)

        self.assertEqual(response, self.messages['starting_retry'])
        self.assertTrue(coordinator.state.in_flight)
        self.assertGreater(coordinator.state.last_wake_at, 0)
        self.assertEqual(self.controller.lookups, 1)
        self.assertEqual(self.controller.restarts, ['d1'])

        await asyncio.sleep(0.1)
        self.assertTrue(coordinator.state.in_flight)

        await asyncio.sleep(0.25)
        self.assertFalse(coordinator.state.in_flight)

    async def test_restart_failure_keeps_cooldown(self):
        """A failed restart still holds the lock for the full cooldown."""
        controller = FakeDeploymentController(restart_ok=False)
        coordinator = self.build(config=make_config(cooldown=0.2), controller=controller)

        response = await coordinator.handle(INTENT)

        self.assertEqual(response, self.messages['restart_failed'])
        self.assertTrue(coordinator.state.in_flight)

        await asyncio.sleep(0.1)
        self.assertTrue(coordinator.state.in_flight)
        self.assertEqual(await coordinator.handle(INTENT), self.messages['starting_wait'])
        self.assertEqual(controller.lookups, 1)

        await asyncio.sleep(0.25)
        self.assertFalse(coordinator.state.in_flight)

    async def test_no_deployment_releases_immediately(self):
        """Without a deployment the next connection may initiate right away."""
        controller = FakeDeploymentController(deployment=None)
        coordinator = self.build(controller=controller)

        response = await coordinator.handle(INTENT)

        self.assertEqual(response, self.messages['no_deployment'])
        self.assertFalse(coordinator.state.in_flight)

        second = await coordinator.handle(INTENT)
        self.assertEqual(second, self.messages['no_deployment'])
        self.assertEqual(controller.lookups, 2)
        self.assertEqual(controller.restarts, [])

    async def test_no_deployment_then_found(self):
        controller = FakeDeploymentController(deployment=None)
        coordinator = self.build(controller=controller)

        await coordinator.handle(INTENT)
        controller.deployment = DeploymentRef('d2')

        self.assertEqual(await coordinator.handle(INTENT), self.messages['starting_retry'])
        self.assertEqual(controller.restarts, ['d2'])
        self.assertTrue(coordinator.state.in_flight)

    async def test_running_server_never_touches_state(self):
        """A running server is reported as online for any prior state."""
        clock = FakeClock()
        coordinator = self.build(health=FakeHealthOracle(running=True), clock=clock)

        for in_flight, last_wake_at in [(False, 0.0), (True, clock.now), (False, clock.now - 10)]:
            coordinator.state.in_flight = in_flight
            coordinator.state.last_wake_at = last_wake_at

            response = await coordinator.handle(INTENT)

            self.assertEqual(response, self.messages['already_online'])
            self.assertEqual(coordinator.state.in_flight, in_flight)
            self.assertEqual(coordinator.state.last_wake_at, last_wake_at)

        self.assertEqual(self.controller.lookups, 0)
        self.assertEqual(self.controller.restarts, [])

    async def test_in_flight_short_circuits(self):
        coordinator = self.build()
        coordinator.state.in_flight = True

        response = await coordinator.handle(INTENT)

        self.assertEqual(response, self.messages['starting_wait'])
        self.assertEqual(self.controller.lookups, 0)
        self.assertTrue(coordinator.state.in_flight)

    async def test_recent_wake_short_circuits(self):
        """Within the cooldown window no wake starts even when not in flight."""
        clock = FakeClock()
        coordinator = self.build(clock=clock)
        coordinator.state.last_wake_at = clock.now - 30

        self.assertEqual(await coordinator.handle(INTENT), self.messages['starting_wait'])
        self.assertEqual(self.controller.lookups, 0)

        clock.now += 30
        self.assertEqual(await coordinator.handle(INTENT), self.messages['starting_retry'])
        self.assertEqual(self.controller.lookups, 1)
        self.assertEqual(coordinator.state.last_wake_at, clock.now)

    async def test_health_checked_while_in_flight(self):
        """The first connection after boot gets the online message."""
        health = FakeHealthOracle()
        coordinator = self.build(health=health)

        await coordinator.handle(INTENT)
        self.assertTrue(coordinator.state.in_flight)

        health.running = True
        self.assertEqual(await coordinator.handle(INTENT), self.messages['already_online'])
        self.assertEqual(health.calls, 2)

    async def test_concurrent_connections_wake_once(self):
        """A burst of simultaneous connections triggers a single wake."""
        health = FakeHealthOracle(yield_first=True)
        controller = FakeDeploymentController(lookup_delay=0.05)
        coordinator = self.build(health=health, controller=controller)

        responses = await asyncio.gather(*(coordinator.handle(INTENT) for _ in range(25)))

        self.assertEqual(controller.lookups, 1)
        self.assertEqual(controller.restarts, ['d1'])
        self.assertEqual(responses.count(self.messages['starting_retry']), 1)
        self.assertEqual(responses.count(self.messages['starting_wait']), 24)
        self.assertEqual(coordinator.stats['wake_attempts'], 1)

    async def test_concurrent_connections_after_cooldown(self):
        """Once the cooldown elapses a new burst again wakes exactly once."""
        controller = FakeDeploymentController(lookup_delay=0.01)
        coordinator = self.build(config=make_config(cooldown=0.1),
                                 health=FakeHealthOracle(yield_first=True),
                                 controller=controller)

        await asyncio.gather(*(coordinator.handle(INTENT) for _ in range(10)))
        self.assertEqual(controller.lookups, 1)

        await asyncio.sleep(0.25)
        self.assertFalse(coordinator.state.in_flight)

        await asyncio.gather(*(coordinator.handle(INTENT) for _ in range(10)))
        self.assertEqual(controller.lookups, 2)

    async def test_lookup_error_treated_as_no_deployment(self):
        controller = FakeDeploymentController(lookup_error=RuntimeError("boom"))
        coordinator = self.build(controller=controller)

        self.assertEqual(await coordinator.handle(INTENT), self.messages['no_deployment'])
        self.assertFalse(coordinator.state.in_flight)

    async def test_restart_error_converted_to_message(self):
        controller = FakeDeploymentController(restart_error=RuntimeError("boom"))
        coordinator = self.build(controller=controller)

        self.assertEqual(await coordinator.handle(INTENT), self.messages['restart_failed'])
        self.assertTrue(coordinator.state.in_flight)

    async def test_stalled_restart_times_out_and_releases(self):
        """A hanging restart call is bounded and the lock is still released."""
        controller = FakeDeploymentController(restart_delay=10)
        coordinator = self.build(config=make_config(cooldown=0.1, request_timeout=0.05),
                                 controller=controller)

        response = await asyncio.wait_for(coordinator.handle(INTENT), timeout=2)

        self.assertEqual(response, self.messages['restart_failed'])
        self.assertTrue(coordinator.state.in_flight)

        await asyncio.sleep(0.25)
        self.assertFalse(coordinator.state.in_flight)

    async def test_health_error_treated_as_not_running(self):
        coordinator = self.build(health=FakeHealthOracle(error=RuntimeError("down")))

        self.assertEqual(await coordinator.handle(INTENT), self.messages['starting_retry'])
        self.assertEqual(self.controller.lookups, 1)

    async def test_cancelled_wake_still_schedules_release(self):
        controller = FakeDeploymentController(restart_delay=10)
        coordinator = self.build(config=make_config(cooldown=0.1), controller=controller)

        task = asyncio.create_task(coordinator.handle(INTENT))
        await asyncio.sleep(0.05)
        self.assertTrue(coordinator.state.in_flight)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.25)
        self.assertFalse(coordinator.state.in_flight)

    async def test_status_report(self):
        clock = FakeClock()
        coordinator = self.build(clock=clock)

        await coordinator.handle(INTENT)
        clock.now += 15
        status = coordinator.get_status()

        self.assertTrue(status['in_flight'])
        self.assertEqual(status['cooldown_remaining'], 45)
        self.assertEqual(status['statistics']['successful_restarts'], 1)
        self.assertEqual(status['statistics']['last_deployment_id'], 'd1')
        self.assertEqual(status['statistics']['decisions']['initiate'], 1)


class TestWakeDecision(unittest.IsolatedAsyncioTestCase):
    """Test the pure decision function."""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.coordinator = WakeCoordinator(make_config(), FakeHealthOracle(),
                                           FakeDeploymentController(), clock=self.clock)
        self.running = HealthResult(HealthStatus.RUNNING, 200, 'active')
        self.down = HealthResult(HealthStatus.NOT_RUNNING, 503)
        self.unreachable = HealthResult(HealthStatus.UNREACHABLE)

    async def test_running_passes_through(self):
        self.coordinator.state.in_flight = True
        self.assertEqual(self.coordinator.decide(self.running), WakeDecision.PASS_THROUGH)

    async def test_fresh_state_initiates(self):
        self.assertEqual(self.coordinator.decide(self.down), WakeDecision.INITIATE)
        self.assertEqual(self.coordinator.decide(self.unreachable), WakeDecision.INITIATE)

    async def test_cooldown_boundary(self):
        self.coordinator.state.last_wake_at = self.clock.now - 59.9
        self.assertEqual(self.coordinator.decide(self.down), WakeDecision.ALREADY_STARTING)

        self.coordinator.state.last_wake_at = self.clock.now - 60
        self.assertEqual(self.coordinator.decide(self.down), WakeDecision.INITIATE)

    async def test_decide_does_not_mutate(self):
        self.coordinator.decide(self.down)
        self.assertFalse(self.coordinator.state.in_flight)
        self.assertEqual(self.coordinator.state.last_wake_at, 0.0)


if __name__ == '__main__':
    unittest.main()
