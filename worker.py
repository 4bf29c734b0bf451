#!/usr/bin/env python3
"""
Root-level entry point for Render deployment.

Render's Python services run from the repo root; this starts the RQ worker
(default) or the HTTP trigger service (--trigger).
"""

import os
import sys

if __name__ == '__main__':
    if '--trigger' in sys.argv:
        from safari_workers.trigger import app

        port = int(os.environ.get('TRIGGER_PORT', 5001))
        app.run(host='0.0.0.0', port=port)
    else:
        from safari_workers.worker import run_worker

        run_worker()
