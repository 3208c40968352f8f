import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

import structlog

from . import config
from .capture import OpenCVCaptureDevice
from .data_models import AttendanceRecord, GeoPosition, StatusEvent
from .descriptor_sources import LegacyPhotoDescriptorSource
from .device import compute_device_hash
from .exceptions import AttendanceError
from .fraud import FraudHeuristicEngine
from .geofence import GeofenceValidator
from .location import StaticPositionProvider
from .matching import DescriptorMatcher
from .stores import InMemoryIdentityStore, JsonLinesRecordStore
from .utils import configure_logging
from .workflow import AttendanceWorkflow

# Initialize structured logger
logger = structlog.get_logger(__name__)


def _parse_check_in(value: str) -> Tuple[GeoPosition, datetime]:
    """Parse ``lat,lon,ISO-timestamp``; naive timestamps are taken as UTC."""
    parts = value.split(",", 2)
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Expected lat,lon,timestamp but got '{value}'")

    try:
        timestamp = datetime.fromisoformat(parts[2].strip())
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        position = GeoPosition(
            latitude=float(parts[0]), longitude=float(parts[1]), timestamp=timestamp
        )
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid check-in '{value}': {e}")

    return position, timestamp


def _camera_source(value: str) -> Union[int, str]:
    """Camera indices are given as digits; anything else is a path or URL."""
    return int(value) if value.isdigit() else value


class AttendanceCLI:
    """Command-line tools for operating and diagnosing a check-in kiosk."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="geoface-attendance",
            description="GeoFace Attendance - liveness, face and geofence verified check-ins",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--log-level",
            default=None,
            help=f"Override LOG_LEVEL. Default: {config.LOG_LEVEL}.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        self._add_config_command(subparsers)
        self._add_geofence_command(subparsers)
        self._add_compare_command(subparsers)
        self._add_travel_command(subparsers)
        self._add_device_hash_command(subparsers)
        self._add_check_in_command(subparsers)

        return parser

    def _add_config_command(self, subparsers) -> None:
        subparsers.add_parser("config", help="Print the effective configuration as JSON.")

    def _add_geofence_command(self, subparsers) -> None:
        """Add the 'geofence' command and its arguments."""
        geofence_parser = subparsers.add_parser(
            "geofence", help="Check whether a position lies inside the approved zone."
        )
        geofence_parser.add_argument("--lat", type=float, required=True, help="Latitude.")
        geofence_parser.add_argument("--lon", type=float, required=True, help="Longitude.")
        geofence_parser.add_argument(
            "--anchor-lat",
            type=float,
            default=config.GEOFENCE_ANCHOR_LATITUDE,
            help="Anchor latitude. Default: GEOFENCE_ANCHOR_LATITUDE.",
        )
        geofence_parser.add_argument(
            "--anchor-lon",
            type=float,
            default=config.GEOFENCE_ANCHOR_LONGITUDE,
            help="Anchor longitude. Default: GEOFENCE_ANCHOR_LONGITUDE.",
        )
        geofence_parser.add_argument(
            "--radius-km",
            type=float,
            default=config.GEOFENCE_RADIUS_KM,
            help=f"Zone radius in km. Default: {config.GEOFENCE_RADIUS_KM}.",
        )

    def _add_compare_command(self, subparsers) -> None:
        """Add the 'compare' command and its arguments."""
        compare_parser = subparsers.add_parser(
            "compare", help="Score a live face image against enrolled face images."
        )
        compare_parser.add_argument("--live", required=True, help="Live capture image.")
        compare_parser.add_argument(
            "--enrolled", required=True, nargs="+", help="One or more enrolled images."
        )

    def _add_travel_command(self, subparsers) -> None:
        """Add the 'travel' command and its arguments."""
        travel_parser = subparsers.add_parser(
            "travel", help="Evaluate the impossible-travel heuristic for two check-ins."
        )
        travel_parser.add_argument(
            "--previous",
            type=_parse_check_in,
            required=True,
            help="Previous check-in as lat,lon,ISO-timestamp.",
        )
        travel_parser.add_argument(
            "--current",
            type=_parse_check_in,
            required=True,
            help="New check-in as lat,lon,ISO-timestamp.",
        )

    def _add_device_hash_command(self, subparsers) -> None:
        subparsers.add_parser("device-hash", help="Print this host's device binding hash.")

    def _add_check_in_command(self, subparsers) -> None:
        """Add the 'check-in' command and its arguments."""
        check_in_parser = subparsers.add_parser(
            "check-in", help="Run a full liveness, face and location verified check-in."
        )
        check_in_parser.add_argument("--identity", required=True, help="Identity key to check in.")
        check_in_parser.add_argument(
            "--enrollment",
            required=True,
            help="JSON file listing enrolled identities with descriptors or photos.",
        )
        check_in_parser.add_argument(
            "--records",
            default=config.RECORD_STORE_PATH,
            help=f"Attendance record file. Default: {config.RECORD_STORE_PATH}.",
        )
        check_in_parser.add_argument(
            "--camera",
            type=_camera_source,
            default=_camera_source(config.CAMERA_SOURCE),
            help="Camera index or video path/URL. Default: CAMERA_SOURCE.",
        )
        check_in_parser.add_argument(
            "--kiosk-lat",
            type=float,
            default=config.KIOSK_LATITUDE,
            help="Kiosk latitude. Default: KIOSK_LATITUDE.",
        )
        check_in_parser.add_argument(
            "--kiosk-lon",
            type=float,
            default=config.KIOSK_LONGITUDE,
            help="Kiosk longitude. Default: KIOSK_LONGITUDE.",
        )

    def _face_components(self):
        """Return the face_recognition extractor, box detector and landmark detector."""
        from .feature_extraction import (
            FaceRecognitionBoxDetector,
            FaceRecognitionExtractor,
            FaceRecognitionLandmarkDetector,
        )

        return (
            FaceRecognitionExtractor(),
            FaceRecognitionBoxDetector(),
            FaceRecognitionLandmarkDetector(),
        )

    def _load_face_components(self):
        try:
            return self._face_components()
        except ImportError as e:
            print(
                f"[ERROR] Face analysis is not installed ({e}). "
                "Install with: pip install 'geoface-attendance[face]'",
                file=sys.stderr,
            )
            return None

    @staticmethod
    def _print_status(event: StatusEvent) -> None:
        print(f"[{event.level.upper()}] {event.stage}: {event.message}", file=sys.stderr)

    def _execute_config_command(self, args: argparse.Namespace) -> int:
        print(json.dumps(config.get_config_summary(), indent=2))
        return 0

    def _execute_geofence_command(self, args: argparse.Namespace) -> int:
        if args.anchor_lat is None or args.anchor_lon is None:
            print(
                "[ERROR] No anchor given and GEOFENCE_ANCHOR_LATITUDE/LONGITUDE are not set",
                file=sys.stderr,
            )
            return 1

        anchor = GeoPosition(latitude=args.anchor_lat, longitude=args.anchor_lon)
        validator = GeofenceValidator(anchor, args.radius_km)
        result = validator.validate(GeoPosition(latitude=args.lat, longitude=args.lon))

        print(
            json.dumps(
                {
                    "valid": result.valid,
                    "distance_km": round(result.distance_km, 6),
                    "radius_km": result.radius_km,
                },
                indent=2,
            )
        )
        return 0 if result.valid else 2

    def _execute_compare_command(self, args: argparse.Namespace) -> int:
        components = self._load_face_components()
        if components is None:
            return 1

        extractor = components[0]
        matcher = DescriptorMatcher()

        enrolled = []
        for path in args.enrolled:
            descriptor = extractor.extract_from_sample(path)
            if descriptor is None:
                logger.warning("No face in enrolled image, skipping", image_path=path)
                continue
            enrolled.append(descriptor)

        if not enrolled:
            print("[ERROR] None of the enrolled images contain a usable face", file=sys.stderr)
            return 1

        live_frame = extractor.load_sample(args.live)
        live = matcher.extract_live_descriptor(extractor, live_frame, None)
        result = matcher.match(live, enrolled)

        print(
            json.dumps(
                {
                    "score": round(result.score, 2),
                    "accepted": result.accepted,
                    "threshold": result.threshold,
                    "best_index": result.best_index,
                },
                indent=2,
            )
        )
        return 0 if result.accepted else 2

    def _execute_travel_command(self, args: argparse.Namespace) -> int:
        previous_position, previous_time = args.previous
        current_position, current_time = args.current

        previous = AttendanceRecord(
            identity_key="CLI",
            timestamp=previous_time,
            position=previous_position,
            biometric_score=0.0,
            liveness_passed=False,
            device_hash="",
        )
        assessment = FraudHeuristicEngine().evaluate(previous, current_position, current_time)

        print(
            json.dumps(
                {
                    "flagged": assessment.flagged,
                    "reason": assessment.reason,
                    "speed_kmh": round(assessment.speed_kmh, 3),
                    "distance_km": round(assessment.distance_km, 3),
                    "elapsed_hours": round(assessment.elapsed_hours, 6),
                },
                indent=2,
            )
        )
        return 0

    def _execute_device_hash_command(self, args: argparse.Namespace) -> int:
        print(compute_device_hash())
        return 0

    def _execute_check_in_command(self, args: argparse.Namespace) -> int:
        anchor = config.get_geofence_anchor()
        if anchor is None:
            print(
                "[ERROR] GEOFENCE_ANCHOR_LATITUDE/LONGITUDE must be set to check in",
                file=sys.stderr,
            )
            return 1

        components = self._load_face_components()
        if components is None:
            return 1

        geofence = GeofenceValidator(anchor, config.GEOFENCE_RADIUS_KM)
        try:
            record = asyncio.run(self._run_check_in(args, components, geofence))
        except AttendanceError as e:
            logger.warning("Check-in failed", **e.to_dict())
            print(
                json.dumps(
                    {"committed": False, "reason": e.reason, "message": e.message},
                    indent=2,
                )
            )
            return 2

        print(json.dumps({"committed": True, "record": record.to_dict()}, indent=2))
        return 0

    async def _run_check_in(
        self, args: argparse.Namespace, components, geofence: GeofenceValidator
    ) -> AttendanceRecord:
        extractor, box_detector, landmark_detector = components

        workflow = AttendanceWorkflow(
            InMemoryIdentityStore.from_json_file(args.enrollment),
            JsonLinesRecordStore(args.records),
            OpenCVCaptureDevice(args.camera),
            box_detector,
            landmark_detector,
            extractor,
            StaticPositionProvider(args.kiosk_lat, args.kiosk_lon),
            geofence,
            descriptor_source=LegacyPhotoDescriptorSource(extractor),
        )
        workflow.subscribe(self._print_status)

        async with workflow:
            await workflow.start_session(args.identity)
            return await workflow.run()

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        args = self.parser.parse_args(args_list)
        configure_logging(level=args.log_level)

        handlers = {
            "config": self._execute_config_command,
            "geofence": self._execute_geofence_command,
            "compare": self._execute_compare_command,
            "travel": self._execute_travel_command,
            "device-hash": self._execute_device_hash_command,
            "check-in": self._execute_check_in_command,
        }

        try:
            return handlers[args.command](args)
        except AttendanceError as e:
            logger.error("Command failed", command=args.command, **e.to_dict())
            print(f"\n[ERROR] {e.message}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130
        except Exception as e:
            logger.error("Unexpected fatal error", command=args.command, exc_info=True)
            print(f"\n[FATAL ERROR] An unexpected error occurred: {e}", file=sys.stderr)
            return 1


def main() -> int:
    """Main entry point for the CLI."""
    cli = AttendanceCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
