"""python -m openchatmobile.server"""

import sys

from openchatmobile.cli import build_parser, config_from_args, run_server

args = build_parser(commands=False).parse_args()
sys.exit(run_server(config_from_args(args)))
