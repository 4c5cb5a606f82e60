import itertools
import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.models import Dataset, Quality, Region
from core.registry import StationRegistry
from synthesizer import RegionalSynthesizer, classify_quality, compute_regional, feels_like

NOW = datetime(2025, 3, 1, 6, 0, tzinfo=timezone.utc)

CENTRAL = Region("central", "Central", ("A", "B"), priority=1)
EAST = Region("east", "East", ("D", "E"), priority=2)


def _payload(ts=NOW, temperature=None, humidity=None, rainfall=None, source="test"):
    data = {}
    for metric, rows in (("temperature", temperature), ("humidity", humidity), ("rainfall", rainfall)):
        if rows is not None:
            data[metric] = {"readings": [{"station": s, "value": v} for s, v in rows]}
    return {"timestamp": ts.isoformat(), "source": source, "data": data}


def _synth(regions=(CENTRAL, EAST), registry=None, now=NOW):
    return RegionalSynthesizer(regions, registry=registry, now=lambda: now)


class TestComputeRegional(unittest.TestCase):
    def test_mean_over_member_stations(self):
        payload = _payload(temperature=[("A", 28.0), ("B", 30.0), ("C", 25.0)])
        self.assertEqual(compute_regional("temperature", payload, CENTRAL), 29.0)

    def test_region_without_reporting_members_is_none(self):
        payload = _payload(temperature=[("C", 25.0)])
        self.assertIsNone(compute_regional("temperature", payload, EAST))

    def test_missing_metric_is_none_not_zero(self):
        payload = _payload(temperature=[("A", 28.0)])
        self.assertIsNone(compute_regional("rainfall", payload, CENTRAL))

    def test_result_does_not_depend_on_reading_order(self):
        rows = [("A", 0.1), ("B", 0.2), ("A", 0.3), ("B", 1e-9), ("A", 31.7)]
        results = {
            compute_regional("temperature", _payload(temperature=list(perm)), CENTRAL)
            for perm in itertools.permutations(rows)
        }
        self.assertEqual(len(results), 1)

    def test_malformed_readings_are_dropped(self):
        payload = {
            "timestamp": NOW.isoformat(),
            "data": {"temperature": {"readings": [
                {"station": "A", "value": 28.0},
                {"station": "B", "value": "hot"},
                {"station": "B", "value": None},
                {"station": "B", "value": True},
                {"value": 40.0},
                "junk",
            ]}},
        }
        dataset = Dataset.from_payload(payload)
        self.assertEqual(dataset.rejected, 5)
        self.assertEqual(compute_regional("temperature", dataset, CENTRAL), 28.0)

    def test_payload_without_timestamp_is_rejected(self):
        with self.assertRaises(ValueError):
            Dataset.from_payload({"data": {}})


class TestClassifyQuality(unittest.TestCase):
    def test_thresholds(self):
        cases = [
            ((5, 5, 0), Quality.HEALTHY),
            ((4, 5, 14), Quality.HEALTHY),
            ((3, 5, 0), Quality.DEGRADED),
            ((5, 5, 15), Quality.DEGRADED),
            ((5, 5, 29), Quality.DEGRADED),
            ((5, 5, 30), Quality.STALE),
            ((1, 5, 45), Quality.STALE),
            ((0, 5, 0), Quality.OFFLINE),
            ((0, 5, 120), Quality.OFFLINE),
        ]
        for args, expected in cases:
            self.assertIs(classify_quality(*args), expected, args)


class TestRegionalSynthesizer(unittest.TestCase):
    def test_composites_for_every_region(self):
        synth = _synth()
        self.assertTrue(synth.ingest(_payload(temperature=[("A", 28.0), ("B", 30.0), ("C", 25.0)])))

        central = synth.get("central")
        self.assertEqual(central.values["temperature"], 29.0)
        self.assertIsNone(central.values["humidity"])
        self.assertIs(central.quality, Quality.HEALTHY)

        east = synth.get("east")
        self.assertIsNone(east.values["temperature"])
        self.assertIs(east.quality, Quality.OFFLINE)
        self.assertEqual(east.reporting_stations, 0)

    def test_age_and_quality_follow_dataset_timestamp(self):
        synth = _synth()
        synth.ingest(_payload(ts=NOW - timedelta(minutes=20, seconds=40), temperature=[("A", 28.0), ("B", 30.0)]))
        central = synth.get("central")
        self.assertEqual(central.age_minutes, 20)
        self.assertIs(central.quality, Quality.DEGRADED)

    def test_rebuild_does_not_carry_over_previous_readings(self):
        synth = _synth()
        synth.ingest(_payload(ts=NOW - timedelta(minutes=5), temperature=[("A", 28.0), ("B", 30.0), ("D", 27.0)]))
        synth.ingest(_payload(ts=NOW, temperature=[("B", 31.0)]))
        self.assertEqual(synth.get("central").values["temperature"], 31.0)
        self.assertIsNone(synth.get("east").values["temperature"])
        self.assertIs(synth.get("central").quality, Quality.DEGRADED)

    def test_older_dataset_never_replaces_newer(self):
        synth = _synth()
        synth.ingest(_payload(ts=NOW, temperature=[("A", 30.0)]))
        before = dict(synth.composites)
        accepted = synth.ingest(_payload(ts=NOW - timedelta(minutes=10), temperature=[("A", 20.0)]))
        self.assertFalse(accepted)
        self.assertEqual(dict(synth.composites), before)
        self.assertEqual(synth.dataset.timestamp, NOW)

    def test_composites_view_is_read_only(self):
        synth = _synth()
        synth.ingest(_payload(temperature=[("A", 30.0)]))
        with self.assertRaises(TypeError):
            synth.composites["central"] = None
        with self.assertRaises(TypeError):
            synth.get("central").values["temperature"] = 0.0

    def test_expected_members_come_from_registry(self):
        registry = StationRegistry.from_stations([
            {"station_id": "A", "coordinates": {"lat": 1.30, "lng": 103.80}, "data_types": ["temperature"]},
            {"station_id": "B", "coordinates": {"lat": 1.31, "lng": 103.81}, "data_types": ["rainfall"]},
        ])
        region = Region("central", "Central", ("A", "B", "GHOST"))
        synth = _synth(regions=[region], registry=registry)
        synth.ingest(_payload(temperature=[("A", 29.0)], rainfall=[("B", 0.4)]))
        composite = synth.get("central")
        self.assertEqual(composite.expected_stations, 2)
        self.assertEqual(composite.reporting_stations, 2)
        self.assertEqual(composite.coverage, 1.0)
        self.assertEqual(registry.get_station_status("A")["status"], "active")

    def test_members_missing_from_a_newer_dataset_go_inactive(self):
        registry = StationRegistry.from_stations([
            {"station_id": "A", "coordinates": {"lat": 1.30, "lng": 103.80}, "data_types": ["temperature"],
             "reliability_score": 0.95},
            {"station_id": "B", "coordinates": {"lat": 1.31, "lng": 103.81}, "data_types": ["temperature"],
             "reliability_score": 0.95},
        ])
        synth = _synth(registry=registry)
        synth.ingest(_payload(temperature=[("A", 29.0), ("B", 30.0)]))
        synth.ingest(_payload(ts=NOW + timedelta(minutes=5), temperature=[("B", 30.5)]))
        # same content again and a late older response do not count as cycles
        synth.ingest(_payload(ts=NOW + timedelta(minutes=5), temperature=[("B", 30.5)]))
        synth.ingest(_payload(ts=NOW - timedelta(minutes=5), temperature=[("A", 28.0)]))

        a = registry.get_station_status("A")
        self.assertEqual(a["status"], "inactive")
        self.assertEqual(a["cycles"], 2)
        self.assertEqual(a["consecutive_failures"], 1)
        self.assertEqual(a["observed_reliability"], 0.5)
        self.assertEqual(registry.get_station_status("B")["status"], "active")
        self.assertEqual(registry.get_health_status(now=NOW)["inactive_stations"], ["A"])

    def test_outbound_shape(self):
        synth = _synth()
        synth.ingest(_payload(temperature=[("A", 28.0), ("B", 30.0)], humidity=[("A", 80.0)]))
        rows = synth.outbound()
        self.assertEqual([r["region"] for r in rows], ["central", "east"])
        central = rows[0]
        self.assertEqual(central["temperature"], 29.0)
        self.assertEqual(central["feels_like"], 31.0)
        self.assertEqual(central["humidity"], 80.0)
        self.assertIsNone(central["rainfall"])
        self.assertEqual(central["quality"], "healthy")
        self.assertEqual(central["last_update"], NOW.isoformat())
        self.assertIsNone(rows[1]["feels_like"])

    def test_feels_like_placeholder(self):
        self.assertEqual(feels_like(29.04), 31.0)
        self.assertIsNone(feels_like(None))

    def test_island_summary_and_consistency(self):
        synth = _synth()
        self.assertIsNone(synth.island_summary())
        synth.ingest(_payload(temperature=[("A", 30.0), ("B", 30.0), ("D", 24.0), ("E", 24.0)]))
        summary = synth.island_summary()
        self.assertEqual(summary["temperature"], 27.0)
        self.assertEqual(summary["station_count"], 4)

        report = synth.consistency_report(threshold_c=2.0)
        self.assertFalse(report["is_consistent"])
        self.assertEqual({i["region"] for i in report["issues"]}, {"central", "east"})
        self.assertTrue(synth.consistency_report(threshold_c=5.0)["is_consistent"])


if __name__ == "__main__":
    unittest.main()
