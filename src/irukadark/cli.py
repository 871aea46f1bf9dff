import argparse
import base64
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from irukadark.api import API
from irukadark.cache import ClientPool, ResponseCache
from irukadark.config import AppConfig, load_environment, setup_logging
from irukadark.data import CredentialManager, PreferencesManager
from irukadark.services import (
    GenerationOrchestrator,
    InteractiveRequestRegistry,
)
from irukadark.transport import RestTransport, SdkTransport
from irukadark.utils import PathManager


class IrukaDarkApp:
    """
    Composition root.
    Builds the managers, caches and transports, and wires them into the API.
    """

    def __init__(self, log_level: int = logging.INFO) -> None:
        # 1. Logging setup
        self.log_buffer = setup_logging(log_level)

        # 2. Environment (.env.local, .env)
        load_environment([PathManager.get_user_data_dir()])
        logging.info(f"{AppConfig.APP_NAME} v{AppConfig.VERSION} - Initializing...")

        # 3. Data
        self.preferences = PreferencesManager()
        self.preferences.load()
        self.credential_manager = CredentialManager(self.preferences)

        # 4. Engine
        self.orchestrator = GenerationOrchestrator(
            credential_manager=self.credential_manager,
            preferences=self.preferences,
            client_pool=ClientPool(),
            response_cache=ResponseCache(),
            sdk_transport=SdkTransport(),
            rest_transport=RestTransport(),
            registry=InteractiveRequestRegistry(),
        )

        # 5. API
        self.api = API(
            orchestrator=self.orchestrator,
            preferences=self.preferences,
            credential_manager=self.credential_manager,
            log_handler=self.log_buffer,
        )

    def run_once(self, args: argparse.Namespace) -> int:
        """Runs one generation from parsed CLI arguments. Returns the exit code."""
        payload = {
            "prompt": args.prompt,
            "source": "shortcut" if args.shortcut else "chat",
        }
        if args.model:
            payload["model"] = args.model
        if args.web_search:
            payload["useWebSearch"] = True

        if args.generate_image:
            result = self.api.generate_image(payload)
        elif args.image:
            image_path = Path(args.image)
            try:
                image_bytes = image_path.read_bytes()
            except OSError as error:
                logging.error(f"Cannot read image {image_path}: {error}")
                return 2
            payload["imageBase64"] = base64.b64encode(image_bytes).decode("ascii")
            payload["mimeType"] = args.mime_type or _guess_mime_type(image_path)
            result = self.api.generate_with_image(payload)
        else:
            result = self.api.generate(payload)

        code = _emit(result, args)
        if args.logs:
            for record in self.api.get_logs():
                print(f"[{record['level']}] {record['message']}", file=sys.stderr)
        return code


def _guess_mime_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in (".jpg", ".jpeg"):
        return "image/jpeg"
    if suffix == ".webp":
        return "image/webp"
    return AppConfig.DEFAULT_IMAGE_MIME_TYPE


def _emit(result: Any, args: argparse.Namespace) -> int:
    if isinstance(result, str):
        if result:
            print(result, file=sys.stderr)
        return 1 if result.startswith(AppConfig.ERROR_PREFIX) else 0

    if "imageBase64" in result:
        output = Path(args.output or "irukadark-image.png")
        output.write_bytes(base64.b64decode(result["imageBase64"]))
        print(str(output))
        return 0

    if args.json:
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return 0

    print(result["text"])
    for source in result.get("sources", []):
        print(f"- {source['title']} <{source['url']}>")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="irukadark", description="Run one Gemini generation from the command line."
    )
    parser.add_argument("prompt", help="Prompt text.")
    parser.add_argument("-m", "--model", help="Model to request first.")
    parser.add_argument("-i", "--image", help="Image file sent along with the prompt.")
    parser.add_argument("--mime-type", help="MIME type of --image.")
    parser.add_argument(
        "-w", "--web-search", action="store_true", help="Enable Google Search grounding."
    )
    parser.add_argument(
        "-s",
        "--shortcut",
        action="store_true",
        help="Interactive request (no cache, clamped output).",
    )
    parser.add_argument(
        "--generate-image", action="store_true", help="Generate an image instead of text."
    )
    parser.add_argument("-o", "--output", help="Output file for --generate-image.")
    parser.add_argument(
        "--json", action="store_true", help="Print the raw result as JSON."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument(
        "--logs", action="store_true", help="Print the buffered log records after the run."
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    app = IrukaDarkApp(log_level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return app.run_once(args)
    except KeyboardInterrupt:
        # generate() has already aborted its in-flight attempts.
        logging.info("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
