#!/usr/bin/env python3
"""
Careboard Insight Orchestrator Demo - Console Output
====================================================

Walks through the dashboard data flow:
1. Concurrent widgets requesting the same insight share one computation
2. Fresh cache hits, then stale-while-revalidate after the TTL
3. A CRUD change invalidating derived insights and notifying list views
4. A failing model served from its last known value

No user input required.
"""

import asyncio
import logging
import random
import time

from careboard import InsightOrchestrator, OrchestratorConfig, TransientInsightError, fingerprint


class InsightDemo:
    """Simple console-based orchestrator demonstration."""

    def __init__(self):
        self.orchestrator = InsightOrchestrator(OrchestratorConfig(
            default_ttl_millis=2000,
            retry_base_delay_millis=50,
            retry_max_delay_millis=200,
            log_level="WARNING",
        ))
        self.patients = {"p1": "Ada", "p2": "Grace"}
        self.model_calls = 0
        self.model_online = True

    async def list_patients(self):
        await asyncio.sleep(0.2)  # simulated query latency
        return sorted(self.patients.values())

    async def readmission_risk(self):
        self.model_calls += 1
        await asyncio.sleep(0.3)
        if not self.model_online:
            raise TransientInsightError("model server unavailable")
        return round(random.uniform(0.05, 0.6), 2)

    async def show(self, label, key, producer, **overrides):
        started = time.perf_counter()
        result = await self.orchestrator.request(key, producer, **overrides)
        elapsed = (time.perf_counter() - started) * 1000
        print(f"{label:<28} {result.source.value:<9} {elapsed:>7.1f}ms  {result.value}")
        return result

    async def run_demo(self):
        risk_key = fingerprint("risk:readmission", patient_id="p1", horizon_days=30)
        print("Careboard Insight Orchestrator Demo")
        print("=" * 60)

        print("\n1. Five widgets ask for the same risk score at once")
        results = await asyncio.gather(*[
            self.orchestrator.request(risk_key, self.readmission_risk) for _ in range(5)
        ])
        print(f"   values: {[r.value for r in results]}  model calls: {self.model_calls}")

        print("\n2. Cache behaviour")
        await self.show("   repeat request", risk_key, self.readmission_risk)
        await asyncio.sleep(2.1)
        await self.show("   after TTL (stale)", risk_key, self.readmission_risk)
        await self.orchestrator.coordinator.drain()
        await self.show("   after refresh", risk_key, self.readmission_risk)

        print("\n3. Patient created while the list view is open")
        self.orchestrator.subscribe(
            "entity:patients",
            lambda event: print(f"   list view notified: {event.payload} (#{event.sequence})"),
        )
        await self.show("   patient list", "list:patients", self.list_patients,
                        source_entity_classes=("patients",))
        self.patients["p3"] = "Mary"
        self.orchestrator.on_entity_changed("patients", "p3", "Created")
        await self.show("   patient list (refetch)", "list:patients", self.list_patients,
                        source_entity_classes=("patients",))

        print("\n4. Model server goes down")
        self.model_online = False
        self.orchestrator.invalidate(risk_key, actor="demo")
        await self.show("   risk score", risk_key, self.readmission_risk)

        stats = self.orchestrator.get_statistics()
        print(f"\n{'=' * 60}")
        print("SUMMARY STATISTICS")
        print(f"{'=' * 60}")
        print(f"Cache:    {stats['cache']}")
        print(f"Requests: {stats['requests']}")

        await self.orchestrator.shutdown()


async def main():
    """Main demo entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    await InsightDemo().run_demo()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\nDemo interrupted.")
