"""
Command-line interface.

    tcga-cohort-deg run --cancer BRCA --attribute race
    tcga-cohort-deg download --cancer BRCA --data-type RNASeq
    tcga-cohort-deg export-gsea --cancer BRCA --attribute race --groups white asian
    tcga-cohort-deg sample --cache data/demo
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .agents.agent0_data import join_clinical, select_samples
from .config import RESULTS_DIR, TCGA_CACHE_DIR, load_config, merge_config, setup_logging
from .data.tcga_downloader import TCGADownloader
from .export.gsea import export_for_gsea
from .orchestrator import CohortDEGPipeline, create_sample_cache

logger = setup_logging("tcga_cohort_deg.cli")


def _banner(title: str, rows: List[str]) -> None:
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}")
    for row in rows:
        print(f"  {row}")
    print(f"{'='*60}\n")


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    overrides = {k: v for k, v in {
        "cancer_type": args.cancer,
        "clinical_attribute": args.attribute,
        "data_type": args.data_type,
        "min_group_size": args.min_group_size,
        "engine": args.engine,
        "cache_dir": args.cache,
    }.items() if v is not None}
    config = merge_config({**config, **overrides})

    pipeline = CohortDEGPipeline(output_dir=args.output, config=config,
                                 run_dir=args.run_dir)
    if args.agent:
        try:
            pipeline.run_agent(args.agent)
        except Exception as e:
            logger.error(f"{args.agent} failed: {type(e).__name__}: {e}")
            return 1
        return 0

    state = pipeline.run_from(args.from_agent) if args.from_agent else pipeline.run()

    _banner("TCGA Cohort DEG Pipeline", [
        f"Cancer Type: {config['cancer_type']}",
        f"Attribute:   {config['clinical_attribute']}",
        f"Completed:   {state['completed_agents']}",
        f"Failed:      {state['failed_agents']}",
        f"Results:     {pipeline.run_dir}",
    ])
    return 1 if state["failed_agents"] else 0


def cmd_download(args: argparse.Namespace) -> int:
    downloader = TCGADownloader(cache_dir=args.cache)
    matrix, metadata, clinical = downloader.download_project(
        cancer_type=args.cancer,
        data_type=args.data_type,
        max_samples=args.max_samples,
        n_workers=args.workers,
    )

    _banner("Download Complete!", [
        f"Matrix:   {matrix.shape[0]} genes x {matrix.shape[1]} samples",
        f"Clinical: {len(clinical)} patients",
        f"Cache:    {downloader.data_dir(args.cancer, args.data_type)}",
    ])
    return 0


def cmd_export_gsea(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    data_type = args.data_type or config["data_type"]

    downloader = TCGADownloader(cache_dir=args.cache)
    matrix, _, clinical = downloader.get_data(args.cancer, data_type)

    matrix = select_samples(matrix, config["sample_type_codes"])
    clinical_data = join_clinical(matrix.columns, clinical)

    paths = export_for_gsea(
        matrix, clinical_data, args.attribute, args.groups[0], args.groups[1],
        out_dir=args.output, data_type=data_type,
    )

    _banner("GSEA Export Complete!", [f"{k.upper()}: {v}" for k, v in paths.items()])
    return 0


def cmd_sample(args: argparse.Namespace) -> int:
    project_dir = create_sample_cache(Path(args.cache), cancer_type=args.cancer)
    print(f"Sample data created in {project_dir}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tcga-cohort-deg",
        description="Differential expression between clinical subgroups of a TCGA cohort"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the full pipeline")
    run.add_argument("--cancer", "-c", help="Cancer type (BRCA, TCGA-BRCA, breast, ...)")
    run.add_argument("--attribute", "-a", help="Clinical attribute to split by (e.g. race)")
    run.add_argument("--data-type", choices=["RNASeq", "CNV", "log"])
    run.add_argument("--min-group-size", type=int)
    run.add_argument("--engine", choices=["native", "limma"])
    run.add_argument("--config", help="JSON config file")
    run.add_argument("--cache", help="TCGA cache directory")
    run.add_argument("--output", "-o", default=str(RESULTS_DIR), help="Output directory")
    run.add_argument("--run-dir", help="Existing run directory (for --agent / --from-agent)")
    step = run.add_mutually_exclusive_group()
    step.add_argument("--agent", choices=CohortDEGPipeline.AGENT_ORDER, help="Run one agent only")
    step.add_argument("--from-agent", choices=CohortDEGPipeline.AGENT_ORDER,
                      help="Resume from a specific agent (requires --run-dir)")
    run.set_defaults(func=cmd_run)

    download = sub.add_parser("download", help="Download TCGA data into the cache")
    download.add_argument("--cancer", "-c", required=True)
    download.add_argument("--data-type", default="RNASeq", choices=["RNASeq", "CNV"])
    download.add_argument("--max-samples", "-n", type=int, default=0, help="0 = all")
    download.add_argument("--workers", "-w", type=int, default=4)
    download.add_argument("--cache", default=str(TCGA_CACHE_DIR))
    download.set_defaults(func=cmd_download)

    export = sub.add_parser("export-gsea", help="Write GSEA GCT/CLS files for two subgroups")
    export.add_argument("--cancer", "-c", required=True)
    export.add_argument("--attribute", "-a", required=True)
    export.add_argument("--groups", nargs=2, required=True, metavar=("GROUP_A", "GROUP_B"))
    export.add_argument("--data-type", choices=["RNASeq", "CNV", "log"],
                        help="Defaults to data_type from --config (RNASeq)")
    export.add_argument("--config", help="JSON config file; sample_type_codes selects the samples")
    export.add_argument("--cache", default=str(TCGA_CACHE_DIR))
    export.add_argument("--output", "-o", default=str(RESULTS_DIR / "gsea"))
    export.set_defaults(func=cmd_export_gsea)

    sample = sub.add_parser("sample", help="Create a synthetic TCGA cache")
    sample.add_argument("--cancer", "-c", default="BRCA")
    sample.add_argument("--cache", default=str(TCGA_CACHE_DIR))
    sample.set_defaults(func=cmd_sample)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "from_agent", None) and not args.run_dir:
        parser.error("--from-agent resumes an existing run and needs --run-dir")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
