#!/usr/bin/env python3
"""
Main Runner - Optimization Session Entry Point
==============================================

Ultra-thin entry point: collects the command-line request and hands it to
the search pipeline.
"""

import json
import logging
import sys
from typing import Optional, List

from optsession.app.core.config_collector import collect_cli_config
from optsession.app.pipeline import orchestrate_search

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point - returns the process exit code"""
    try:
        request = collect_cli_config(argv)
        if request is None:
            return 1  # CLI parsing failed or --help

        result = orchestrate_search(request)
        if result['success']:
            print(json.dumps(result['result'], indent=2, default=str))
        else:
            print(f"Error: {result['error']}", file=sys.stderr)

        return 0 if result['success'] else 1
    except (KeyError, ValueError) as e:
        logger.error("Main runner failed: %s", e, exc_info=True)
        return 1
    except Exception as e:
        logger.critical("Unexpected error in main runner: %s", e, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
