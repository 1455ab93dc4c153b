#!/usr/bin/env python3
"""Run a playbook training loop.

Creates a run from train/eval dataset files and drives it to completion in
the foreground, or operates on existing runs.

Usage:
    # Create and run a new training run
    python scripts/run_training.py --db playbook.db --name demo \\
        --train data/train.csv --eval data/eval.json

    # Run an existing pending run
    python scripts/run_training.py --db playbook.db --run-id 3

    # Check status
    python scripts/run_training.py --db playbook.db --status --run-id 3

    # Request a stop / recover stuck runs
    python scripts/run_training.py --db playbook.db --stop --run-id 3
    python scripts/run_training.py --db playbook.db --recover
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables (override=True ensures .env takes precedence over shell)
load_dotenv(override=True)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: If True, set DEBUG level
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description="Run the playbook training loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--db",
        type=str,
        default="playbook.db",
        help="Database path (default: playbook.db)",
    )
    parser.add_argument("--run-id", type=int, default=None, help="Existing run ID")
    parser.add_argument("--name", type=str, default=None, help="Name for a new run")
    parser.add_argument("--train", type=str, default=None, help="Training data file (.csv or .json)")
    parser.add_argument("--eval", type=str, default=None, help="Evaluation data file (.csv or .json)")

    parser.add_argument(
        "--max-epochs",
        type=int,
        default=10,
        help="Maximum number of epochs (default: 10)",
    )
    parser.add_argument(
        "--plateau-threshold",
        type=float,
        default=0.01,
        help="Improvement threshold reported in plateau messages (default: 0.01)",
    )
    parser.add_argument(
        "--plateau-patience",
        type=int,
        default=3,
        help="Epochs without a new best F1 before stopping (default: 3)",
    )
    parser.add_argument(
        "--max-errors-to-reflect",
        type=int,
        default=None,
        help="Cap on reflections per epoch (default: every error)",
    )

    parser.add_argument("--status", action="store_true", help="Show run status and exit")
    parser.add_argument("--stop", action="store_true", help="Request a stop for a running run")
    parser.add_argument("--recover", action="store_true", help="Fail stuck or timed-out runs and exit")
    parser.add_argument(
        "--seed-baseline",
        action="store_true",
        help="Insert the baseline playbook before training if missing",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument(
        "--mock-llm",
        action="store_true",
        help="Use mock LLM client (for testing)",
    )

    return parser


def show_status(service, run_id: int) -> None:
    status = service.get_run_status(run_id)

    print(f"\n{'='*60}")
    print(f"Run #{status['run_id']}: {status['name']}")
    print(f"{'='*60}")
    print(f"Status: {status['status']}")
    if status["failure_reason"]:
        print(f"Reason: {status['failure_reason']}")
    print(f"Started: {status['started_at']}")
    if status["completed_at"]:
        print(f"Completed: {status['completed_at']}")
    print(
        f"Dataset: {status['dataset']['training_samples']} train, "
        f"{status['dataset']['eval_samples']} eval"
    )
    progress = status["progress"]
    print(f"Progress: epoch {progress['current_epoch']}/{progress['max_epochs']} ({progress['progress_percent']}%)")

    if status["epochs"]:
        print(f"\n{'Epoch':<8} {'F1':<8} {'Cat F1':<8} {'Risk F1':<8} {'Acc':<8} {'Size':<6} {'Errors':<8} {'Added'}")
        print("-" * 70)
        for e in status["epochs"]:
            print(
                f"{e['epoch_number']:<8} {e['overall_f1']:<8.3f} {e['category_f1']:<8.3f} "
                f"{e['risk_f1']:<8.3f} {e['accuracy']:<8.3f} {e['playbook_size']:<6} "
                f"{e['errors_found']:<8} {e['heuristics_added']}"
            )

    if status["best_epoch"]:
        best = status["best_epoch"]
        print(f"\nBest epoch: {best['epoch_number']} (F1 {best['overall_f1']:.3f})")
    if status["plateau_status"]:
        print(f"Plateau: {status['plateau_status']['message']}")
    print()


def run(args) -> int:
    """Execute the requested command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    from pydantic import ValidationError

    from src.db.repo import Repository
    from src.training.baseline import baseline_heuristics
    from src.training.config import CreateRunRequest, PipelineConfig, RecoveryConfig
    from src.training.dataset import parse_dataset
    from src.training.errors import TrainingError
    from src.training.service import TrainingService, client_pipeline_factory

    logger = logging.getLogger(__name__)

    if args.mock_llm:
        from src.agents.client import MockGeminiClient
        llm_client = MockGeminiClient()
    else:
        from src.agents.client import GeminiClient, GeminiConfig
        llm_client = GeminiClient(GeminiConfig())

    factory = client_pipeline_factory(
        llm_client,
        PipelineConfig(max_errors_to_reflect=args.max_errors_to_reflect),
    )

    with Repository(args.db) as repo:
        service = TrainingService(repo, factory, RecoveryConfig.from_env())

        try:
            if args.recover:
                print(json.dumps(service.recover_now(), indent=2))
                return 0

            if args.status:
                if args.run_id is None:
                    runs = service.list_runs(limit=10)
                    if not runs:
                        print("No training runs found")
                        return 0
                    print(f"\n{'ID':<6} {'Name':<24} {'Status':<12} {'Epochs':<8} {'Started'}")
                    print("-" * 70)
                    for r in runs:
                        epochs = len(service.list_epochs(r["id"]))
                        print(f"{r['id']:<6} {r['name'][:24]:<24} {r['status']:<12} {epochs:<8} {r['started_at']}")
                    return 0
                show_status(service, args.run_id)
                return 0

            if args.stop:
                if args.run_id is None:
                    print("Error: --stop requires --run-id")
                    return 1
                service.stop_run(args.run_id)
                print(f"Stop requested for run {args.run_id}; it ends after the current epoch")
                return 0

            if args.seed_baseline:
                inserted = repo.seed_baseline_heuristics(baseline_heuristics())
                logger.info(f"Seeded {inserted} baseline heuristics")

            run_id = args.run_id
            if run_id is None:
                if not (args.name and args.train and args.eval):
                    print("Error: a new run needs --name, --train and --eval")
                    return 1
                request = CreateRunRequest(
                    name=args.name,
                    max_epochs=args.max_epochs,
                    plateau_threshold=args.plateau_threshold,
                    plateau_patience=args.plateau_patience,
                )
                train_path = Path(args.train)
                eval_path = Path(args.eval)
                train_rows = parse_dataset(train_path.read_text(), filename=train_path.name)
                eval_rows = parse_dataset(eval_path.read_text(), filename=eval_path.name)
                run_id = service.create_run(request, train_rows, eval_rows).id

            outcome = service.run_sync(run_id)
        except ValidationError as e:
            print(f"Error: invalid run parameters\n{e}")
            return 1
        except TrainingError as e:
            print(f"Error: {e}")
            for detail in getattr(e, "errors", []):
                print(f"  - {detail}")
            return 1

        print(f"\nRun {outcome.run_id} finished: {outcome.status} after {outcome.epochs_completed} epochs")
        print(f"Reason: {outcome.reason}")
        show_status(service, run_id)
        return 0 if outcome.status in ("completed", "stopped") else 1


def main() -> int:
    parser = create_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
