"""Seed the database with hotspot zones.

Usage:
    python -m pahal.seed_hotspots [zones.json]

The optional JSON file holds a list of objects with name, latitude,
longitude, radius_meters and optionally description / risk_score.
"""

import json
import logging
import sys

logger = logging.getLogger(__name__)


# Known accident-prone junctions used when no zone file is given
DEFAULT_HOTSPOTS = [
    {"name": "Kashmere Gate Junction", "latitude": 28.6139, "longitude": 77.2090, "radius_meters": 600, "risk_score": 85},
    {"name": "Nehru Place Flyover", "latitude": 28.5494, "longitude": 77.2513, "radius_meters": 500, "risk_score": 72},
    {"name": "Outer Ring Road Saket", "latitude": 28.5672, "longitude": 77.2100, "radius_meters": 700, "risk_score": 88},
    {"name": "Rajiv Chowk", "latitude": 28.6280, "longitude": 77.2189, "radius_meters": 400, "risk_score": 65},
    {"name": "ITO Junction", "latitude": 28.6289, "longitude": 77.2408, "radius_meters": 550, "risk_score": 78},
]


def sync_hotspots_to_db(zones: list[dict]):
    """Upsert hotspot zones by name. Existing counters are left untouched."""
    from pahal.database import db
    from pahal.models import Hotspot

    added = 0
    updated = 0

    for zone in zones:
        if not zone.get("name") or zone.get("latitude") is None or zone.get("longitude") is None:
            logger.debug(f"Skipping incomplete zone entry: {zone}")
            continue

        existing = Hotspot.query.filter_by(name=zone["name"]).first()
        if existing:
            existing.latitude = float(zone["latitude"])
            existing.longitude = float(zone["longitude"])
            existing.radius_meters = float(zone.get("radius_meters", existing.radius_meters))
            existing.description = zone.get("description", existing.description)
            existing.is_active = True
            updated += 1
        else:
            db.session.add(Hotspot(
                name=zone["name"],
                description=zone.get("description"),
                latitude=float(zone["latitude"]),
                longitude=float(zone["longitude"]),
                radius_meters=float(zone.get("radius_meters", 500)),
                risk_score=float(zone.get("risk_score", 0.0)),
                is_active=True,
            ))
            added += 1

    db.session.commit()
    logger.info(f"Hotspot sync: {added} added, {updated} updated")
    return added, updated


def seed_hotspots(path=None):
    """Seed the database with hotspot zones."""
    from pahal.app import create_app
    from pahal.config import Config
    from pahal.models import Hotspot

    class SeedConfig(Config):
        START_BACKGROUND_WORKERS = False

    zones = DEFAULT_HOTSPOTS
    if path:
        with open(path, encoding="utf-8") as fh:
            zones = json.load(fh)
        logger.info(f"Loaded {len(zones)} zones from {path}")

    app = create_app(SeedConfig)
    with app.app_context():
        logger.info(f"Current hotspot count: {Hotspot.query.count()}")
        sync_hotspots_to_db(zones)
        logger.info(f"Done! Total hotspots in database: {Hotspot.query.count()}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    seed_hotspots(sys.argv[1] if len(sys.argv) > 1 else None)
