"""
Status Server - Read-only discovery state

Exposes the aggregated server list and refresh state over HTTP so a UI
can render it. Nothing here changes discovery settings.

Endpoints:
- GET  /servers     aggregated servers in display order
- GET  /status      full scheduler snapshot
- GET  /networks    detected private networks
- GET  /quickmatch  best server for the configured criteria
- POST /refresh     force a master or local refresh
- GET  /health
"""

import asyncio
import logging
from datetime import datetime

from aiohttp import web

from odx_discovery.servers.scheduler import LOCAL, MASTER, RefreshScheduler
from odx_discovery.utils.quick_match import find_best_match

logger = logging.getLogger(__name__)


class StatusServer:
    """HTTP view of the refresh scheduler"""

    def __init__(self, config, scheduler: RefreshScheduler):
        self.config = config
        self.scheduler = scheduler
        self.app = web.Application()
        self.runner = None
        self._background = set()
        self._setup_routes()

    def _setup_routes(self):
        """Setup HTTP routes"""
        self.app.router.add_get('/servers', self.handle_servers)
        self.app.router.add_get('/status', self.handle_status)
        self.app.router.add_get('/networks', self.handle_networks)
        self.app.router.add_get('/quickmatch', self.handle_quick_match)
        self.app.router.add_post('/refresh', self.handle_refresh)

        # Health check
        self.app.router.add_get('/health', self.handle_health)
        self.app.router.add_get('/', self.handle_root)

    async def handle_servers(self, request: web.Request) -> web.Response:
        """
        Aggregated servers

        Query params:
        - source: optional filter (local, custom or master)
        """
        servers = [s.to_dict() for s in self.scheduler.servers]
        source = request.query.get('source')
        if source:
            servers = [s for s in servers if s['source'] == source]
        return web.json_response({
            'servers': servers,
            'count': len(servers),
        })

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.scheduler.snapshot())

    async def handle_networks(self, request: web.Request) -> web.Response:
        try:
            networks = self.scheduler.interface_cache.get()
        except Exception as e:
            logger.error(f"[Status] Error reading network interfaces: {e}", exc_info=True)
            return web.json_response({'error': str(e)}, status=500)
        return web.json_response({
            'networks': [n.to_dict() for n in networks],
        })

    async def handle_quick_match(self, request: web.Request) -> web.Response:
        """
        Best server for the configured quick-match criteria

        Returns:
        - server: the chosen server, or null
        - reason: why nothing matched, when server is null
        """
        try:
            criteria = self.config.quick_match_criteria()
        except ValueError as e:
            return web.json_response({'error': str(e)}, status=400)

        result = find_best_match(
            self.scheduler.servers.records(), criteria, self.config.AVAILABLE_GAME_DATA
        )
        return web.json_response({
            'server': result.server.to_dict() if result.server else None,
            'reason': result.reason,
        })

    async def handle_refresh(self, request: web.Request) -> web.Response:
        """
        Force a refresh

        Query params:
        - target: master (default) or local
        """
        target = request.query.get('target', MASTER)
        if target not in (MASTER, LOCAL):
            return web.json_response({
                'error': f'Unknown refresh target: {target}'
            }, status=400)
        if target == LOCAL and not self.scheduler.local_enabled:
            return web.json_response({
                'error': 'Local discovery is disabled'
            }, status=409)

        logger.info(f"[Status] Forced {target} refresh requested")
        task = asyncio.create_task(self.scheduler.refresh(target, force=True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        return web.json_response({'target': target, 'accepted': True}, status=202)

    async def handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint"""
        return web.json_response({
            'status': 'healthy',
            'service': 'ODX Discovery',
            'timestamp': datetime.utcnow().isoformat()
        })

    async def handle_root(self, request: web.Request) -> web.Response:
        """Root endpoint"""
        return web.Response(
            text='ODX Discovery Status Server\n',
            content_type='text/plain'
        )

    async def start(self):
        """Start status server"""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        site = web.TCPSite(
            self.runner,
            self.config.STATUS_HOST,
            self.config.STATUS_PORT
        )
        await site.start()

        logger.info(f"Status Server started on {self.config.STATUS_HOST}:{self.config.STATUS_PORT}")

    async def stop(self):
        """Stop status server"""
        for task in list(self._background):
            task.cancel()
        if self.runner:
            await self.runner.cleanup()
            logger.info("Status Server stopped")
