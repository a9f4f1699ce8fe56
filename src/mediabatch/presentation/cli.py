"""CLI interface for batch media encoding."""
import sys
import argparse
from pathlib import Path
from typing import Dict, Any, List, Optional

from mediabatch.application import BatchCoordinator, JobOrchestrator, ResultMaterializer, download_asset
from mediabatch.domain.exceptions import AuthorizationExpiredError, DomainException
from mediabatch.domain.models import ScanReport
from mediabatch.domain.storage import ICopyTarget
from mediabatch.domain.transforms import content_aware_transform
from mediabatch.infrastructure.config import BatchSettings, ConfigLoader
from mediabatch.infrastructure.mediaservices import MediaServicesClient
from mediabatch.infrastructure.storage import (
    LocalDirectoryDestination,
    is_account_url,
    open_account,
    open_container,
)
from mediabatch.shared.logging import get_logger, setup_logger
from mediabatch.shared.metrics import MetricsCollector

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AUTH_EXPIRED = 2
EXIT_INTERRUPTED = 130


def create_orchestrator_from_config(settings: BatchSettings, metrics: MetricsCollector) -> JobOrchestrator:
    """Create the job orchestrator with its media services client."""
    retry = settings.retry_strategy()
    client = MediaServicesClient(settings.media_account(), retry=retry)
    return JobOrchestrator(
        client,
        poll_interval=settings.poll_interval_seconds,
        timeout=settings.job_timeout_seconds,
        name_prefix=settings.name_prefix,
        container_factory=lambda url: open_container(url, retry=retry),
        metrics=metrics,
    )


def create_destination_from_config(settings: BatchSettings) -> Optional[ICopyTarget]:
    """Remote container, local directory, or None to leave outputs in their assets."""
    if settings.destination_url:
        return open_container(settings.destination_url, retry=settings.retry_strategy())
    if settings.output_dir:
        return LocalDirectoryDestination(settings.output_dir)
    return None


def create_materializer_from_config(settings: BatchSettings, metrics: MetricsCollector) -> ResultMaterializer:
    return ResultMaterializer(copy_timeout=settings.copy_timeout_seconds, metrics=metrics)


def _log_reports(logger, reports: List[ScanReport]) -> None:
    for report in reports:
        logger.info(f"  {report}")
        for materialized in report.materialized:
            for name, reason in materialized.failed.items():
                logger.warning(f"    copy failed {materialized.source}/{name}: {reason}")


def cmd_scan(args, settings: BatchSettings, metrics: MetricsCollector) -> int:
    logger = get_logger(__name__)
    if not settings.storage_url:
        logger.error("No storage URL: pass --storage-url or set REMOTESTORAGEACCOUNTSAS")
        return EXIT_FAILED

    orchestrator = create_orchestrator_from_config(settings, metrics)
    logger.info(f"Creating encoding transform {settings.transform_name} (or updating if it exists)")
    orchestrator.ensure_transform(content_aware_transform(settings.transform_name))

    coordinator = BatchCoordinator(
        orchestrator,
        create_materializer_from_config(settings, metrics),
        settings,
        destination=create_destination_from_config(settings),
        metrics=metrics,
    )

    retry = settings.retry_strategy()
    if is_account_url(settings.storage_url):
        account = open_account(settings.storage_url, retry=retry)
        if args.container:
            reports = coordinator.scan_containers(account.get_container(name) for name in args.container)
        else:
            reports = coordinator.scan_account(account)
    else:
        reports = coordinator.scan_containers([open_container(settings.storage_url, retry=retry)])

    logger.info("=" * 60)
    logger.info(f"Scanned {len(reports)} containers")
    _log_reports(logger, reports)
    if coordinator.orphans:
        logger.warning(f"{len(coordinator.orphans)} jobs still running, check them later")
    return EXIT_OK


def cmd_encode(args, settings: BatchSettings, metrics: MetricsCollector) -> int:
    logger = get_logger(__name__)
    if not args.input_file and not args.input_url:
        logger.error("Pass --input-file or --input-url")
        return EXIT_FAILED

    orchestrator = create_orchestrator_from_config(settings, metrics)
    orchestrator.ensure_transform(content_aware_transform(settings.transform_name))

    uniqueness = orchestrator.new_uniqueness()
    job_input = orchestrator.prepare_input(
        input_file=args.input_file,
        input_url=args.input_url,
        uniqueness=uniqueness,
    )
    handle = orchestrator.submit_input(job_input, settings.transform_name, uniqueness=uniqueness)
    handle = orchestrator.await_completion(settings.transform_name, handle.name)
    orchestrator.raise_for_state(handle)
    logger.info(f"Job {handle.name} finished")

    if settings.output_dir:
        materializer = create_materializer_from_config(settings, metrics)
        for asset_name in handle.output_assets:
            report = download_asset(
                orchestrator,
                materializer,
                asset_name,
                settings.output_dir,
                flatten=settings.flatten_output,
            )
            if not report.success:
                return EXIT_FAILED
    return EXIT_OK


def cmd_download(args, settings: BatchSettings, metrics: MetricsCollector) -> int:
    orchestrator = create_orchestrator_from_config(settings, metrics)
    report = download_asset(
        orchestrator,
        create_materializer_from_config(settings, metrics),
        args.asset,
        settings.output_dir or Path("Output"),
        exclude_extensions=settings.exclude_extensions if args.exclude_manifests else (),
        flatten=settings.flatten_output,
    )
    return EXIT_OK if report.success else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediabatch", description="Batch media encoding")
    parser.add_argument('--config', type=Path, help='Config YAML file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose')
    parser.add_argument('--log-file', type=Path, help='Also write logs to this file')
    parser.add_argument('--transform', help='Transform name')
    parser.add_argument('--poll-interval', type=float, help='Seconds between status polls')
    parser.add_argument('--output-dir', '-o', type=Path, help='Download outputs into this directory')
    parser.add_argument('--flatten', action='store_true', default=None, help='Drop folders from output names')

    sub = parser.add_subparsers(dest='command', required=True)

    scan = sub.add_parser('scan', help='Encode every eligible file of a storage account or container')
    scan.add_argument('--storage-url', help='Account or container SAS URL, or s3://bucket[/prefix]')
    scan.add_argument('--container', action='append', help='Only scan this container (repeatable)')
    scan.add_argument('--batch-size', type=int, help='Jobs per batch')
    scan.add_argument('--max-in-flight', type=int, help='Cap on running jobs across batches')
    scan.add_argument('--batch-timeout', type=float, help='Seconds to wait on one batch')
    scan.add_argument('--extensions', help='Comma separated extensions to encode (.mp4,.mov)')
    scan.add_argument('--destination-url', help='Copy outputs into this container')
    scan.add_argument('--delete-source', action='store_true', default=None,
                      help='Delete output assets once copied')
    scan.add_argument('--no-skip-processed', action='store_false', dest='skip_processed', default=None,
                      help='Resubmit blobs already marked with a status')

    encode = sub.add_parser('encode', help='Encode one file or URL and wait for it')
    source = encode.add_mutually_exclusive_group()
    source.add_argument('--input-file', type=Path, help='Local file to upload')
    source.add_argument('--input-url', help='HTTP(S) or SAS URL to encode')
    encode.add_argument('--timeout', type=float, help='Seconds to wait for the job')

    download = sub.add_parser('download', help='Download the contents of an asset')
    download.add_argument('asset', help='Asset name')
    download.add_argument('--exclude-manifests', action='store_true',
                          help='Skip .ism/.ismc/.mpi files')

    return parser


def _overrides(args) -> Dict[str, Any]:
    mapping = {
        'transform': 'transform_name',
        'poll_interval': 'poll_interval_seconds',
        'output_dir': 'output_dir',
        'flatten': 'flatten_output',
        'log_file': 'log_file',
        'storage_url': 'storage_url',
        'batch_size': 'batch_size',
        'max_in_flight': 'max_in_flight',
        'batch_timeout': 'batch_timeout_seconds',
        'extensions': 'extension_filters',
        'destination_url': 'destination_url',
        'delete_source': 'delete_source_on_success',
        'skip_processed': 'skip_processed',
        'timeout': 'job_timeout_seconds',
    }
    return {key: getattr(args, attr) for attr, key in mapping.items() if getattr(args, attr, None) is not None}


COMMANDS = {
    'scan': cmd_scan,
    'encode': cmd_encode,
    'download': cmd_download,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    setup_logger(level='DEBUG' if args.verbose else 'INFO')
    logger = get_logger(__name__)
    metrics = MetricsCollector()

    try:
        settings = ConfigLoader(config_path=args.config).load(overrides=_overrides(args))
        setup_logger(
            level='DEBUG' if args.verbose else settings.log_level,
            log_file=settings.log_file,
        )

        logger.info("=" * 60)
        logger.info(f"mediabatch {args.command}")
        logger.info(f"Account: {settings.account_name or '(not set)'}")
        logger.info(f"Transform: {settings.transform_name}")
        logger.info("=" * 60)

        code = COMMANDS[args.command](args, settings, metrics)

        for line in metrics.format_summary():
            logger.info(line)
        return code

    except AuthorizationExpiredError as e:
        logger.error(f"Authorization expired: {e}")
        logger.error("\tGenerate a Read/List SAS token URL in the portal under the storage account's shared access signature menu")
        logger.error("\tGrant the allowed resource types: Service, Container, and Object")
        logger.error("\tGrant the allowed permissions: Read, List")
        return EXIT_AUTH_EXPIRED
    except DomainException as e:
        logger.error(f"Error: {e}")
        return EXIT_FAILED
    except ValueError as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == '__main__':
    sys.exit(main())
