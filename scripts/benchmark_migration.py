from __future__ import annotations

import argparse
import os
import random
import time
from dataclasses import dataclass
from pathlib import Path

import storeshift.db.session as db_session_module
from storeshift.core.config import get_settings
from storeshift.core.logging import configure_logging
from storeshift.db.init_db import initialize_database
from storeshift.db.models import MigrationStatus
from storeshift.worker.pipeline import enqueue_migration, get_migration_coordinator, reset_migration_coordinator

WORKSPACE_ID = "benchmark"


@dataclass(slots=True)
class RunStats:
    elapsed_seconds: float
    status: str
    total_files: int
    migrated_files: int
    failed_files: int
    migrated_bytes: int

    @property
    def files_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.migrated_files / self.elapsed_seconds

    @property
    def mib_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.migrated_bytes / (1024 * 1024) / self.elapsed_seconds


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark local-to-local migration throughput")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--files", type=int, default=2000, help="Number of seeded source files")
    parser.add_argument("--min-size", type=int, default=1024, help="Smallest seeded file in bytes")
    parser.add_argument("--max-size", type=int, default=256 * 1024, help="Largest seeded file in bytes")
    parser.add_argument("--concurrency", type=int, default=8, help="Migration worker concurrency")
    parser.add_argument("--no-verify", action="store_true", help="Skip checksum comparison")
    parser.add_argument("--seed", type=int, default=20260301, help="Random seed")
    parser.add_argument("--timeout", type=float, default=3600.0, help="Give up waiting after this many seconds")
    parser.add_argument("--min-files-per-second", type=float, default=None, help="Fail if throughput is below threshold")
    parser.add_argument("--log-level", default="WARNING", help="Log level while the benchmark runs")
    return parser.parse_args()


def configure_env(state_root: Path, concurrency: int) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["STORESHIFT_STATE_ROOT"] = state_root.as_posix()
    os.environ["STORESHIFT_MIGRATION_DEFAULT_CONCURRENCY"] = str(max(1, concurrency))
    os.environ["STORESHIFT_MIGRATION_MAX_CONCURRENCY"] = str(max(64, concurrency))

    get_settings.cache_clear()
    db_session_module.reset_engine()
    reset_migration_coordinator()


def seed_files(source_root: Path, *, total_files: int, min_size: int, max_size: int, seed: int) -> int:
    rng = random.Random(seed)
    total_bytes = 0
    for index in range(total_files):
        size = rng.randint(min_size, max(min_size, max_size))
        path = source_root / f"dir-{index % 50:02d}" / f"object-{index:06d}.bin"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(rng.randbytes(size))
        total_bytes += size
    return total_bytes


def run_benchmark(*, source_root: Path, target_root: Path, verify: bool, timeout: float) -> RunStats:
    coordinator = get_migration_coordinator()
    coordinator.workspaces.configure_storage(WORKSPACE_ID, "local", {"local_path": source_root.as_posix()})

    start = time.perf_counter()
    job_id = enqueue_migration(
        WORKSPACE_ID,
        "local",
        {"local_path": target_root.as_posix()},
        verify_integrity=verify,
    )
    snapshot = coordinator.wait_for(job_id, timeout=timeout)
    elapsed = time.perf_counter() - start

    return RunStats(
        elapsed_seconds=elapsed,
        status=snapshot.status.value,
        total_files=snapshot.total_files,
        migrated_files=snapshot.migrated_files,
        failed_files=snapshot.failed_files,
        migrated_bytes=snapshot.migrated_bytes,
    )


def assert_thresholds(args: argparse.Namespace, stats: RunStats) -> None:
    failures: list[str] = []
    if stats.status != MigrationStatus.COMPLETED.value:
        failures.append(f"status={stats.status}")
    if args.min_files_per_second is not None and stats.files_per_second < args.min_files_per_second:
        failures.append(
            f"files_per_second={stats.files_per_second:.2f} < min_files_per_second={args.min_files_per_second:.2f}"
        )
    if failures:
        raise RuntimeError("; ".join(failures))


def main() -> None:
    args = parse_args()
    state_root = Path(args.state_root).resolve()
    configure_env(state_root, concurrency=args.concurrency)
    configure_logging(args.log_level)
    initialize_database()

    source_root = state_root / "bench-source"
    target_root = state_root / "bench-target"
    seeded_bytes = seed_files(
        source_root,
        total_files=max(1, args.files),
        min_size=max(0, args.min_size),
        max_size=max(0, args.max_size),
        seed=args.seed,
    )

    stats = run_benchmark(
        source_root=source_root,
        target_root=target_root,
        verify=not args.no_verify,
        timeout=args.timeout,
    )

    print("== Migration Benchmark ==")
    print(f"status={stats.status}")
    print(f"seeded_bytes={seeded_bytes}")
    print(f"total_files={stats.total_files}")
    print(f"migrated_files={stats.migrated_files}")
    print(f"failed_files={stats.failed_files}")
    print(f"elapsed_seconds={stats.elapsed_seconds:.3f}")
    print(f"files_per_second={stats.files_per_second:.2f}")
    print(f"mib_per_second={stats.mib_per_second:.2f}")

    assert_thresholds(args, stats)


if __name__ == "__main__":
    main()
