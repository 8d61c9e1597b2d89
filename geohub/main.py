# geohub/main.py
# 串起：collector -> ingest workers -> storage
# 另有两个管理命令：重新抽样未标注作者、导出训练/分类数据

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from geohub.collector import load_sources, run_collectors
from geohub.geography import WORLD_BOX, RegionResolver
from geohub.storage import CLASSIFICATION_LIMIT, Storage, StorageError, StorageInitError
from geohub.utils import get_stemmer

logger = logging.getLogger("geohub")

ROOT = Path(__file__).resolve().parents[1]

DEFAULT_CFG = {
    "storage": {
        "db_path": "geo.db",
        "classification_limit": CLASSIFICATION_LIMIT,
    },
    "ingest": {
        "workers": 4,
        # 没有位置的推文：推文丢弃，作者照样登记（未标注样本的来源）
        "register_unlocated_authors": True,
    },
    "geography": {
        "regions_file": "ops/regions.yml",
    },
    "collector": {
        "sources_file": "ops/sources.yml",
        "bounding_box": list(WORLD_BOX),
    },
    "logging": {
        "level": "INFO",
    },
}


def load_cfg(path: Optional[Path] = None) -> dict:
    """ops/config.yml 可选；不存在就用默认。每一节单独浅合并。"""
    cfg_path = Path(path) if path else ROOT / "ops" / "config.yml"
    data = {}
    if cfg_path.exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    elif path:
        raise FileNotFoundError(f"config not found: {cfg_path}")

    out = {}
    for section, defaults in DEFAULT_CFG.items():
        out[section] = {**defaults, **(data.get(section) or {})}
    return out


def _path(p: str) -> Path:
    q = Path(p)
    return q if q.is_absolute() else ROOT / q


# 消息自带 [组件] 前缀，格式里不再重复 logger 名
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


async def open_storage(cfg: dict) -> Storage:
    resolver = RegionResolver.from_yaml(_path(cfg["geography"]["regions_file"]))
    return await Storage.open(
        _path(cfg["storage"]["db_path"]),
        resolver,
        classification_limit=int(cfg["storage"]["classification_limit"]),
        register_unlocated_authors=bool(cfg["ingest"]["register_unlocated_authors"]),
    )


async def run_ingest_worker(name: str, queue: "asyncio.Queue", storage: Storage):
    """从队列取推文写库；单条失败只记日志，继续处理下一条。"""
    logger.debug("[%s] started", name)
    try:
        while True:
            post = await queue.get()
            try:
                await storage.ingest(post)
            except StorageError as e:
                logger.error("[%s] post %s not stored: %s", name, post.id, e)
            except Exception:
                logger.exception("[%s] unexpected error on post %s, skipped", name, getattr(post, "id", None))
            finally:
                queue.task_done()
    except asyncio.CancelledError:
        logger.debug("[%s] cancelled", name)
        raise


async def run_pipeline(cfg: dict, run_seconds: int = 0) -> dict:
    """
    run_seconds > 0：运行指定秒数；
    run_seconds <= 0：运行到所有采集任务结束且队列清空（follow 模式下等同常驻）。
    返回结束时的表行数。
    """
    storage = await open_storage(cfg)

    q_raw: asyncio.Queue = asyncio.Queue(maxsize=1000)
    sources = load_sources(_path(cfg["collector"]["sources_file"]))
    box = cfg["collector"]["bounding_box"]

    collectors = await run_collectors(q_raw, sources, bounding_box=box, root=ROOT)
    workers = [
        asyncio.create_task(run_ingest_worker(f"ingest-{i}", q_raw, storage))
        for i in range(max(1, int(cfg["ingest"]["workers"])))
    ]
    logger.info("[main] %d collectors, %d ingest workers", len(collectors), len(workers))

    try:
        if run_seconds and run_seconds > 0:
            await asyncio.sleep(run_seconds)
        else:
            await asyncio.gather(*collectors)
            await q_raw.join()
    except asyncio.CancelledError:
        logger.info("[main] cancelled")
        raise
    finally:
        for t in collectors + workers:
            t.cancel()
        await asyncio.gather(*collectors, *workers, return_exceptions=True)
        try:
            counts = await storage.counts()
            if counts["unlabeled_sample"] == 0:
                n_unlabeled = await storage.unlabeled_authors()
                if n_unlabeled:
                    logger.info(
                        "[main] unlabeled sample is empty but %d authors have no located post; run --resample",
                        n_unlabeled,
                    )
        finally:
            await storage.close()
        logger.info("[main] finished: %s", counts)
    return counts


async def resample(cfg: dict) -> int:
    storage = await open_storage(cfg)
    try:
        return await storage.resample_unlabeled()
    finally:
        await storage.close()


async def export(cfg: dict, which: str, out: Path) -> int:
    """把训练集或分类视图导出成 CSV，返回行数。"""
    storage = await open_storage(cfg)
    try:
        if which == "training":
            df = await storage.training_frame()
        else:
            df = await storage.classification_frame()
    finally:
        await storage.close()
    df.to_csv(out, index=False)
    logger.info("[main] exported %d %s rows to %s", len(df), which, out)
    return len(df)


def cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest geotagged posts into the home-country dataset store.")
    parser.add_argument("--config", type=Path, default=None, help="YAML 配置（默认 ops/config.yml）")
    parser.add_argument("--run-seconds", type=int, default=0)
    parser.add_argument("--resample", action="store_true", help="重新抽取未标注作者样本后退出")
    parser.add_argument("--export", nargs=2, metavar=("WHICH", "PATH"),
                        help="导出 training 或 classification 到 CSV 后退出")
    args = parser.parse_args(argv)

    try:
        cfg = load_cfg(args.config)
    except (OSError, yaml.YAMLError) as e:
        print(f"[main] cannot read config: {e}", file=sys.stderr)
        return 1
    setup_logging(cfg["logging"]["level"])
    # 启动时初始化一次词干器，之后不再有初始化开销
    get_stemmer()

    try:
        if args.resample:
            n = asyncio.run(resample(cfg))
            print(f"resampled {n} unlabeled authors")
        elif args.export:
            which, out = args.export
            if which not in ("training", "classification"):
                parser.error("WHICH must be 'training' or 'classification'")
            asyncio.run(export(cfg, which, Path(out)))
        else:
            asyncio.run(run_pipeline(cfg, run_seconds=args.run_seconds))
    except StorageInitError as e:
        logger.critical("[main] cannot initialize storage: %s", e)
        return 1
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.critical("[main] aborted: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("[main] interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
