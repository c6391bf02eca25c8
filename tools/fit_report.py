"""Headless armor fitting report.

Builds the procedural avatar, segments it into body regions, shrinkwraps
a box cuirass onto the torso hull, resolves shallow collisions and binds
the result to the avatar's skeleton, then prints what each stage did.

Usage::

    python -m tools.fit_report [--preset hull] [--iterations 8] [--json]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Optional

import numpy as np

from armorfit.body.regions import compute_regions
from armorfit.core.events import EventBus, EventType
from armorfit.core.state import FittingParameters
from armorfit.fitting.session import FittingSession
from armorfit.spatial.bvh import SpatialIndex
from tools.procedural_avatar import make_avatar, make_cuirass

logger = logging.getLogger(__name__)


def run_report(
    preset: str = "hull",
    iterations: Optional[int] = None,
    armor_size: float = 0.5,
    segments: int = 4,
) -> dict:
    """Run the full fit pipeline and return a JSON-serialisable summary."""
    t0 = time.time()
    avatar = make_avatar()
    armor = make_cuirass(size=armor_size, segments=segments)

    params = FittingParameters.preset(preset)
    if iterations is not None:
        params = params.with_overrides(iterations=iterations)

    regions = compute_regions(avatar)
    region_info = {
        name: {
            "bones": r.bones,
            "vertices": r.vertex_count,
            "size": [round(float(s), 4) for s in r.size],
            "fallback": r.used_fallback,
            "corrected": r.corrected,
        }
        for name, r in regions.items()
    }

    bus = EventBus()
    bus.subscribe(
        EventType.FIT_ITERATION,
        lambda iteration, fraction, mean_displacement: logger.info(
            "  iteration %d (%.0f%%): mean displacement %.5f",
            iteration, fraction * 100, mean_displacement,
        ),
    )
    session = FittingSession(armor, bus=bus)

    logger.info("Fitting '%s' (%d vertices) with preset '%s'", armor.name, armor.vertex_count, preset)
    result = session.fit_to_hull(avatar, params)
    moved = session.resolve_collisions(avatar)
    bound = session.bind(avatar)

    # Distance from each armor vertex to the avatar surface along the inward ray
    index = SpatialIndex.build(avatar)
    points = armor.world_positions()
    dirs = index.center - points
    usable = np.linalg.norm(dirs, axis=1) > 1e-9
    hits = index.query_rays(points[usable], dirs[usable])
    gaps = hits.distance[hits.hit]

    return {
        "avatar": {"vertices": avatar.vertex_count, "triangles": avatar.triangle_count,
                   "bones": len(avatar.skeleton)},
        "armor": {"vertices": armor.vertex_count, "triangles": armor.triangle_count},
        "regions": region_info,
        "fit": {
            "status": result.status.value,
            "iterations": result.iterations,
            "mean_displacements": [round(d, 6) for d in result.mean_displacements],
            "restored_vertices": result.restored_vertices,
        },
        "collisions": {"vertices_moved": moved},
        "binding": {
            "status": session.status.value,
            "strategies": session.last_report.as_dict(),
            "bones_used": sorted({
                avatar.skeleton.bones[int(b)].name
                for b in np.unique(bound.skin_indices[bound.skin_weights > 0])
            }),
        },
        "surface_gap": {
            "mean": float(gaps.mean()) if len(gaps) else None,
            "max": float(gaps.max()) if len(gaps) else None,
        },
        "elapsed": round(time.time() - t0, 3),
    }


def print_report(report: dict) -> None:
    print("=" * 60)
    print("ARMOR FIT REPORT")
    print("=" * 60)
    a = report["avatar"]
    print(f"Avatar: {a['vertices']} vertices, {a['triangles']} triangles, {a['bones']} bones")
    print(f"Armor:  {report['armor']['vertices']} vertices, {report['armor']['triangles']} triangles")

    print("\nBody regions:")
    for name, r in report["regions"].items():
        flags = []
        if r["fallback"]:
            flags.append("fallback")
        if r["corrected"]:
            flags.append("corrected")
        extra = f" [{', '.join(flags)}]" if flags else ""
        size = ", ".join(f"{s:.3f}" for s in r["size"])
        print(f"  {name:<8} {r['vertices']:5d} verts  size ({size}){extra}")

    fit = report["fit"]
    print(f"\nFit: {fit['status']} after {fit['iterations']} iterations")
    for i, d in enumerate(fit["mean_displacements"], 1):
        print(f"  {i:3d}: {d:.6f}")
    if fit["restored_vertices"]:
        print(f"  restored {fit['restored_vertices']} interior vertices")

    print(f"\nCollisions: {report['collisions']['vertices_moved']} vertices moved")

    b = report["binding"]
    print(f"\nBinding: {b['status']}")
    for k, v in b["strategies"].items():
        print(f"  {k:<18} {v}")
    print(f"  bones: {', '.join(b['bones_used'])}")

    gap = report["surface_gap"]
    if gap["mean"] is not None:
        print(f"\nSurface gap: mean {gap['mean']:.4f}, max {gap['max']:.4f}")
    print(f"\nDone in {report['elapsed']:.2f}s")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Headless armor fitting report")
    parser.add_argument("--preset", default="hull", help="Fitting preset name (default: hull)")
    parser.add_argument("--iterations", type=int, help="Override preset iteration count")
    parser.add_argument("--size", type=float, default=0.5, help="Cuirass box size")
    parser.add_argument("--segments", type=int, default=4, help="Cuirass face subdivisions")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        report = run_report(
            preset=args.preset, iterations=args.iterations,
            armor_size=args.size, segments=args.segments,
        )
    except KeyError as e:
        logger.error("%s", e)
        return 1

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
