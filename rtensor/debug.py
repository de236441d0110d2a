"""
Debug output for rtensor.

Environment variables for debug output:
- RTENSOR_VERBOSE: Framework status messages (connect, reconnect, close)
- RTENSOR_DEBUG_CLIENT: Client-side debug prints (dispatch, correlation, releases)
- RTENSOR_DEBUG_SERVER: Reference server debug prints

By default rtensor is completely silent. Only errors are shown.
"""

import os
import sys


DEBUG_CLIENT = os.environ.get('RTENSOR_DEBUG_CLIENT', '0') == '1'
DEBUG_SERVER = os.environ.get('RTENSOR_DEBUG_SERVER', '0') == '1'
VERBOSE = os.environ.get('RTENSOR_VERBOSE', '0') == '1'


def debug_print_client(*args, **kwargs):
    """Print client debug message if RTENSOR_DEBUG_CLIENT=1."""
    if DEBUG_CLIENT:
        print("[CLIENT]", *args, **kwargs)


def debug_print_server(*args, **kwargs):
    """Print server debug message if RTENSOR_DEBUG_SERVER=1."""
    if DEBUG_SERVER:
        print("[SERVER]", *args, **kwargs)


def verbose_print(*args, **kwargs):
    """Print verbose framework message if RTENSOR_VERBOSE=1."""
    if VERBOSE:
        print(*args, **kwargs)


def error_print(*args):
    """Print an error message. Always shown."""
    print("rtensor:", *args, file=sys.stderr)
