"""
VirtFusion API Service
Handles VPS server, hypervisor, network and user management via the VirtFusion panel API
"""

import logging
from typing import Dict, List, Optional, Any

import requests

from config import get_config

logger = logging.getLogger(__name__)

# Dashboard action name -> VirtFusion power endpoint
POWER_ENDPOINTS = {
    'start': 'boot',
    'boot': 'boot',
    'stop': 'shutdown',
    'shutdown': 'shutdown',
    'restart': 'restart',
    'reboot': 'restart',
    'poweroff': 'poweroff',
}

RUNNING_STATES = {'running', 'online', 'active', 'started', 'on', 'powered on', 'complete'}
STOPPED_STATES = {'stopped', 'offline', 'off', 'shutdown', 'powered off'}
PROVISIONING_MARKERS = ('provision', 'building', 'creating', 'pending', 'queued')
ERROR_MARKERS = ('error', 'failed')


class VirtFusionError(Exception):
    """Non-2xx response (or transport failure) from the VirtFusion API"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def map_status(state: Optional[str], suspended: bool = False, build_failed: bool = False) -> str:
    """Collapse VirtFusion power/build state into running | stopped | provisioning | error"""
    if suspended:
        return 'stopped'
    if build_failed:
        return 'error'
    if not state:
        return 'stopped'

    value = state.lower()
    if value in RUNNING_STATES:
        return 'running'
    if value in STOPPED_STATES:
        return 'stopped'
    if any(marker in value for marker in PROVISIONING_MARKERS):
        return 'provisioning'
    if any(marker in value for marker in ERROR_MARKERS):
        return 'error'
    return 'running'


def _clamp_percent(value: float) -> float:
    return min(100.0, max(0.0, value))


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def primary_ipv4(server: Dict[str, Any]) -> Optional[str]:
    interfaces = (server.get('network') or {}).get('interfaces') or []
    for iface in interfaces:
        for ip in iface.get('ipv4') or []:
            if ip.get('address'):
                return ip['address']
    return None


def transform_server(server: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a raw VirtFusion server record for the dashboard"""
    state = server.get('power_status') or server.get('powerState') or server.get('power') or server.get('state') or ''
    suspended = bool(server.get('suspended'))
    resources = server.get('resources') or {}
    owner = server.get('owner')
    if not isinstance(owner, dict):
        owner = {'id': server.get('ownerId')} if server.get('ownerId') is not None else None

    package = server.get('package')
    hypervisor = server.get('hypervisor')
    return {
        'id': server.get('id'),
        'name': server.get('name') or f"Server {server.get('id')}",
        'uuid': server.get('uuid') or '',
        'hostname': server.get('hostname') or '',
        'status': map_status(state, suspended, bool(server.get('buildFailed'))),
        'suspended': suspended,
        'owner': owner,
        'primaryIp': primary_ipv4(server),
        'package': {'name': package.get('name')} if isinstance(package, dict) else None,
        'hypervisor': {'name': hypervisor.get('name')} if isinstance(hypervisor, dict) else None,
        'specs': {
            'vcpu': resources.get('cpuCores') or 1,
            'ramMb': resources.get('memory') or 1024,
            'diskGb': resources.get('storage') or 20,
            'trafficGb': resources.get('traffic'),
        },
        'os': (server.get('os') or {}).get('name') or (server.get('os') or {}).get('dist'),
        'createdAt': server.get('created_at') or server.get('createdAt'),
    }


def transform_hypervisor(hv: Dict[str, Any]) -> Dict[str, Any]:
    resources = hv.get('resources') or {}
    usage = hv.get('usage') or {}
    group = hv.get('group')
    return {
        'id': hv.get('id'),
        'name': hv.get('name'),
        'hostname': hv.get('hostname'),
        'ip': hv.get('ip'),
        'enabled': bool(hv.get('enabled')),
        'maintenance': bool(hv.get('maintenance')),
        'vmCount': _to_int(hv.get('serverCount') or hv.get('vmCount')),
        'maxVms': _to_int(hv.get('maxServers') or hv.get('maxVms')),
        'cpuUsage': usage.get('cpu'),
        'memoryUsage': usage.get('memory'),
        'diskUsage': usage.get('disk'),
        'maxCpu': _to_int(resources.get('cpuCores') or hv.get('maxCpu')),
        'maxMemory': _to_int(resources.get('memory') or hv.get('maxMemory')),
        'group': {'id': group.get('id'), 'name': group.get('name')} if isinstance(group, dict) else None,
    }


class VirtFusionService:
    """VirtFusion API wrapper for VPS server management"""

    def __init__(self):
        vf_config = get_config().virtfusion
        self.api_token = vf_config.api_token
        self.base_url = vf_config.api_base_url
        self.timeout = vf_config.timeout
        if not self.api_token or not self.base_url:
            logger.warning("VIRTFUSION_PANEL_URL / VIRTFUSION_API_TOKEN not set - VirtFusion features disabled")

        self.headers = {
            'Authorization': f'Bearer {self.api_token}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def is_available(self) -> bool:
        return bool(self.api_token and self.base_url)

    def _request(self, method: str, endpoint: str, json: Optional[Dict] = None,
                 params: Optional[Dict] = None, timeout: Optional[int] = None) -> Any:
        if not self.is_available():
            raise VirtFusionError("VirtFusion is not configured", 503)

        url = f'{self.base_url}{endpoint}'
        try:
            response = requests.request(
                method,
                url,
                headers=self.headers,
                json=json,
                params=params,
                timeout=timeout or self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"VirtFusion network error on {method} {endpoint}: {e}")
            raise VirtFusionError(f"VirtFusion unreachable: {e}") from e

        if not response.ok:
            message = response.text[:500]
            try:
                body = response.json()
                if isinstance(body, dict):
                    errors = body.get('errors')
                    message = body.get('msg') or body.get('message') or (
                        '; '.join(str(e) for e in errors) if isinstance(errors, list) else message)
            except ValueError:
                # Non-JSON body: keep the raw text
                pass
            logger.error(f"VirtFusion API error {response.status_code} on {method} {endpoint}: {message}")
            raise VirtFusionError(f"VirtFusion API error: {response.status_code} {message}".strip(),
                                  response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def _get_optional(self, endpoint: str, params: Optional[Dict] = None) -> Optional[Dict[str, Any]]:
        """GET returning the data object, or None on 404"""
        try:
            return self._request('GET', endpoint, params=params).get('data')
        except VirtFusionError as e:
            if e.status_code == 404:
                return None
            raise

    # === Connectivity ===

    def validate_connection(self) -> bool:
        try:
            self._request('GET', '/connect')
            return True
        except VirtFusionError as e:
            logger.error(f"VirtFusion connection check failed: {e}")
            return False

    # === Users ===

    def get_user_by_ext_relation(self, ext_relation_id: str) -> Optional[Dict[str, Any]]:
        return self._get_optional(f'/users/{ext_relation_id}/byExtRelation')

    def create_user(self, name: str, email: str, ext_relation_id: str) -> Dict[str, Any]:
        result = self._request('POST', '/users', json={
            'name': name,
            'email': email,
            'extRelationId': ext_relation_id,
            'sendMail': False,
        })
        user = result.get('data') or {}
        logger.info(f"Created VirtFusion user {user.get('id')} for {email}")
        return user

    def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._get_optional(f'/users/{user_id}')

    def get_all_users(self, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        result = self._request('GET', '/users', params={'page': page, 'results': limit})
        return {
            'users': result.get('data') or [],
            'page': result.get('current_page', page),
            'lastPage': result.get('last_page', page),
            'total': result.get('total', len(result.get('data') or [])),
        }

    # === Servers ===

    def list_servers_by_user(self, user_id: int) -> List[Dict[str, Any]]:
        result = self._request('GET', f'/servers/user/{user_id}')
        return [transform_server(s) for s in result.get('data') or []]

    def list_all_servers(self) -> List[Dict[str, Any]]:
        """All servers across every page, transformed"""
        servers: List[Dict[str, Any]] = []
        page = 1
        while True:
            result = self._request('GET', '/servers', params={'page': page, 'results': 100})
            servers.extend(transform_server(s) for s in result.get('data') or [])
            last_page = result.get('last_page') or 1
            if page >= last_page:
                break
            page += 1
        logger.info(f"📊 Listed {len(servers)} servers from VirtFusion")
        return servers

    def get_server_raw(self, server_id: int) -> Optional[Dict[str, Any]]:
        return self._get_optional(f'/servers/{server_id}')

    def get_server(self, server_id: int) -> Optional[Dict[str, Any]]:
        server = self.get_server_raw(server_id)
        return transform_server(server) if server else None

    def power_action(self, server_id: int, action: str) -> None:
        endpoint = POWER_ENDPOINTS.get(action)
        if endpoint is None:
            raise ValueError(f"Unknown power action: {action}")
        self._request('POST', f'/servers/{server_id}/power/{endpoint}')
        logger.info(f"⚡ Power {action} ({endpoint}) sent to server {server_id}")

    def suspend_server(self, server_id: int) -> None:
        self._request('POST', f'/servers/{server_id}/suspend')
        logger.info(f"⏸️ Suspended server {server_id}")

    def unsuspend_server(self, server_id: int) -> None:
        self._request('POST', f'/servers/{server_id}/unsuspend')
        logger.info(f"▶️ Unsuspended server {server_id}")

    def delete_server(self, server_id: int, delay_minutes: int = 0) -> None:
        params = {'delay': delay_minutes} if delay_minutes else None
        self._request('DELETE', f'/servers/{server_id}', params=params)
        logger.info(f"🗑️ Deleted server {server_id}")

    def transfer_server(self, server_id: int, new_owner_id: int) -> None:
        self._request('PUT', f'/servers/{server_id}/owner/{new_owner_id}')
        logger.info(f"🔁 Transferred server {server_id} to VirtFusion user {new_owner_id}")

    def rename_server(self, server_id: int, name: str) -> None:
        self._request('PATCH', f'/servers/{server_id}/modify/name', json={'name': name})

    def get_server_live_stats(self, server_id: int) -> Optional[Dict[str, Any]]:
        """Live CPU/RAM/disk usage (percentages clamped to 0-100, memory in MB)"""
        server = self._get_optional(f'/servers/{server_id}', params={'remoteState': 'true'})
        if not server:
            return None
        remote = server.get('remoteState') or {}
        memory = remote.get('memory') or {}

        mem_total_kb = _to_int(memory.get('memtotal'))
        mem_free_kb = _to_int(memory.get('memavailable')) or _to_int(memory.get('memfree'))
        ram_usage = ((mem_total_kb - mem_free_kb) / mem_total_kb * 100) if mem_total_kb > 0 else 0.0

        cpu = remote.get('cpu')
        if isinstance(cpu, dict):
            cpu_usage = _to_float(cpu.get('usage', cpu.get('percent')))
        else:
            cpu_usage = _to_float(cpu)

        disk = remote.get('disk') or remote.get('storage') or {}
        disk_usage = _to_float(disk.get('usage', disk.get('percent'))) if isinstance(disk, dict) else 0.0

        return {
            'cpuUsage': _clamp_percent(cpu_usage),
            'ramUsage': _clamp_percent(ram_usage),
            'diskUsage': _clamp_percent(disk_usage),
            'memoryTotalMb': round(mem_total_kb / 1024),
            'memoryUsedMb': round((mem_total_kb - mem_free_kb) / 1024),
            'memoryFreeMb': round(mem_free_kb / 1024),
            'running': bool(remote.get('running')) or remote.get('state') == 'running',
        }

    def get_server_traffic(self, server_id: int) -> Optional[Dict[str, Any]]:
        return self._get_optional(f'/servers/{server_id}/traffic')

    def get_build_status(self, server_id: int) -> Optional[Dict[str, Any]]:
        server = self.get_server_raw(server_id)
        if not server:
            return None
        state = server.get('state') or ''
        return {
            'state': state,
            'status': map_status(state, bool(server.get('suspended')), bool(server.get('buildFailed'))),
            'buildFailed': bool(server.get('buildFailed')),
            'complete': state.lower() == 'complete',
        }

    def get_network_info(self, server_id: int) -> Optional[Dict[str, Any]]:
        server = self.get_server_raw(server_id)
        if not server:
            return None
        interfaces = (server.get('network') or {}).get('interfaces') or []
        return {
            'interfaces': [
                {
                    'name': iface.get('name') or f'eth{index}',
                    'mac': iface.get('mac') or 'N/A',
                    'ipv4': [{'address': ip.get('address') or 'N/A',
                              'gateway': ip.get('gateway') or 'N/A',
                              'netmask': ip.get('netmask') or 'N/A'} for ip in iface.get('ipv4') or []],
                    'ipv6': [{'address': ip.get('address') or 'N/A'} for ip in iface.get('ipv6') or []],
                }
                for index, iface in enumerate(interfaces)
            ]
        }

    # === Provisioning ===

    def provision_server(self, user_id: int, package_id: int, hypervisor_group_id: int,
                         os_id: Optional[int], hostname: str) -> Dict[str, Any]:
        """
        Create a server and queue its OS build

        Args:
            user_id: VirtFusion owner id
            package_id: VirtFusion package for the plan
            hypervisor_group_id: Location's hypervisor group
            os_id: Operating system template id (no build queued when None)
            hostname: Validated hostname

        Returns:
            Transformed server record
        """
        created = self._request('POST', '/servers', json={
            'packageId': package_id,
            'userId': user_id,
            'hypervisorId': hypervisor_group_id,
            'ipv4': 1,
        }, timeout=60)
        server = created.get('data') or {}
        server_id = server.get('id')
        if not server_id:
            raise VirtFusionError("VirtFusion did not return a server id")
        logger.info(f"Created VirtFusion server {server_id} for user {user_id} (package {package_id})")

        if os_id is not None:
            self._request('POST', f'/servers/{server_id}/build', json={
                'operatingSystemId': os_id,
                'name': hostname,
                'hostname': hostname,
                'email': True,
            }, timeout=60)
            logger.info(f"Queued OS build {os_id} for server {server_id} ({hostname})")

        return transform_server(server)

    def get_packages(self) -> List[Dict[str, Any]]:
        return self._request('GET', '/packages').get('data') or []

    def get_os_templates_for_package(self, package_id: int) -> List[Dict[str, Any]]:
        """OS template groups allowed for a package"""
        try:
            return self._request('GET', f'/media/templates/fromServerPackageSpec/{package_id}').get('data') or []
        except VirtFusionError as e:
            logger.error(f"Failed to fetch OS templates for package {package_id}: {e}")
            return []

    # === Infrastructure ===

    def get_hypervisors(self) -> List[Dict[str, Any]]:
        result = self._request('GET', '/compute/hypervisors', params={'results': 200})
        return [transform_hypervisor(h) for h in result.get('data') or []]

    def get_hypervisor(self, hypervisor_id: int) -> Optional[Dict[str, Any]]:
        hv = self._get_optional(f'/compute/hypervisors/{hypervisor_id}')
        return transform_hypervisor(hv) if hv else None

    def get_hypervisor_groups(self) -> List[Dict[str, Any]]:
        return self._request('GET', '/compute/hypervisors/groups').get('data') or []

    def get_ip_blocks(self) -> List[Dict[str, Any]]:
        result = self._request('GET', '/connectivity/ipblocks', params={'results': 200})
        blocks = []
        for block in result.get('data') or []:
            blocks.append({
                'id': block.get('id'),
                'name': block.get('name'),
                'cidr': block.get('cidr') or f"{block.get('address')}/{block.get('prefix')}",
                'gateway': block.get('gateway'),
                'type': block.get('type') or 'ipv4',
                'totalAddresses': _to_int(block.get('totalAddresses') or block.get('total')),
                'usedAddresses': _to_int(block.get('usedAddresses') or block.get('used')),
            })
        return blocks

    def get_ip_allocations(self) -> List[Dict[str, Any]]:
        """IPv4 addresses currently assigned to servers"""
        allocations = []
        page = 1
        while True:
            result = self._request('GET', '/servers', params={'page': page, 'results': 100})
            for server in result.get('data') or []:
                interfaces = (server.get('network') or {}).get('interfaces') or []
                for iface in interfaces:
                    for ip in iface.get('ipv4') or []:
                        if not ip.get('address'):
                            continue
                        allocations.append({
                            'address': ip['address'],
                            'gateway': ip.get('gateway'),
                            'serverId': server.get('id'),
                            'serverName': server.get('name'),
                            'blockId': ip.get('blockId') or ip.get('ipBlockId'),
                        })
            if page >= (result.get('last_page') or 1):
                break
            page += 1
        return allocations


def os_template_ids(template_groups: List[Dict[str, Any]]) -> List[int]:
    """Flatten VirtFusion template groups into the list of allowed template ids"""
    ids: List[int] = []
    for group in template_groups or []:
        templates = group.get('templates')
        if templates is None:
            if group.get('id') is not None:
                ids.append(int(group['id']))
            continue
        ids.extend(int(t['id']) for t in templates if t.get('id') is not None)
    return ids


# Global instance (lazy - doesn't crash if VirtFusion credentials are missing)
try:
    virtfusion_service = VirtFusionService()
except Exception as e:
    logger.warning(f"VirtFusion service not initialized: {e}")
    virtfusion_service = None
