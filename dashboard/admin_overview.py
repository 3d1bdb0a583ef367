"""
Admin overview: infrastructure stats (polled every 30 seconds) and hypervisor utilisation
"""

import logging
from typing import Any, Dict, List, Optional

from dashboard.api_client import ApiClient
from dashboard.query_client import QueryClient, QueryObserver

logger = logging.getLogger(__name__)

STATS_KEY = ('admin', 'vf', 'stats')
HYPERVISORS_KEY = ('admin', 'vf', 'hypervisors')
STATS_REFETCH_SECONDS = 30.0


def hypervisor_state(hypervisor: Dict[str, Any]) -> str:
    if hypervisor.get('maintenance'):
        return 'Maintenance'
    return 'Active' if hypervisor.get('enabled') else 'Disabled'


def _percent(value: Optional[float]) -> str:
    return 'N/A' if value is None else f"{value}%"


def hypervisor_row(hypervisor: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': hypervisor.get('id'),
        'name': hypervisor.get('name'),
        'state': hypervisor_state(hypervisor),
        'vms': f"{hypervisor.get('vmCount', 0)}/{hypervisor.get('maxVms', 0)}",
        'cpu': _percent(hypervisor.get('cpuUsage')),
        'memory': _percent(hypervisor.get('memoryUsage')),
        'disk': _percent(hypervisor.get('diskUsage')),
        'memoryBar': hypervisor.get('memoryUsage') or 0,
        'cpuBar': hypervisor.get('cpuUsage') or 0,
    }


class AdminOverview:
    def __init__(self, api: ApiClient, queries: QueryClient, refetch_seconds: float = STATS_REFETCH_SECONDS):
        self.api = api
        self.queries = queries
        self.refetch_seconds = refetch_seconds
        self._observers: List[QueryObserver] = []

    async def _fetch_stats(self) -> Dict[str, Any]:
        return (await self.api.get('/admin/vf/stats')).get('stats') or {}

    async def _fetch_hypervisors(self) -> List[Dict[str, Any]]:
        return (await self.api.get('/admin/vf/hypervisors')).get('hypervisors') or []

    def start(self) -> None:
        if self._observers:
            return
        self._observers = [
            self.queries.watch(STATS_KEY, self._fetch_stats, refetch_interval=self.refetch_seconds),
            self.queries.watch(HYPERVISORS_KEY, self._fetch_hypervisors),
        ]

    def stop(self) -> None:
        for observer in self._observers:
            observer.unsubscribe()
        self._observers = []

    async def refresh(self) -> None:
        await self.queries.invalidate_queries(('admin', 'vf'))

    @property
    def stats(self) -> Optional[Dict[str, Any]]:
        return self.queries.get_query_data(STATS_KEY)

    @property
    def cards(self) -> List[Dict[str, str]]:
        stats = self.stats
        if not stats:
            return []
        servers = stats['servers']
        hypervisors = stats['hypervisors']
        networking = stats['networking']
        return [
            {'label': 'Servers', 'value': str(servers['total']),
             'detail': f"{servers['running']} running / {servers['stopped']} stopped"},
            {'label': 'Hypervisors', 'value': str(hypervisors['total']),
             'detail': f"{hypervisors['enabled']} enabled / {hypervisors['maintenance']} maintenance"},
            {'label': 'IP Utilization', 'value': f"{networking['utilization']}%",
             'detail': f"{networking['usedIps']} of {networking['totalIps']} used"},
        ]

    @property
    def hypervisor_panel(self) -> List[Dict[str, Any]]:
        return [hypervisor_row(hv) for hv in self.queries.get_query_data(HYPERVISORS_KEY) or []]
