"""
RouterOS auto-configuration script generator.

The router downloads the rendered .rsc file and imports it. The script is
safe to run repeatedly: every object it needs is expressed as an
EnsureObject (find by match, add when missing, otherwise set), and every
stage reports progress through a best-effort fetch of the log URL.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import quote

from fleetlink.core.config import Config
from fleetlink.provisioning.sessions import ProvisioningError, ProvisioningSession

logger = logging.getLogger(__name__)


class Raw(str):
    """A script expression rendered without quoting (e.g. ``$apiUser``)."""


def escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")


def quote_value(value) -> str:
    if isinstance(value, Raw):
        return str(value)
    return f'"{escape(value)}"'


def _pairs(values: Dict[str, object], joiner: str) -> str:
    return joiner.join(f"{key}={quote_value(val)}" for key, val in values.items())


@dataclass
class EnsureObject:
    """
    Desired state of one object in a RouterOS menu.

    Renders a block that looks the object up by ``match``; when absent it is
    added with ``match`` and ``values``, otherwise (if ``update``) the
    ``values`` are set on it. A failure logs ``<stage>-failed``.
    """
    menu: str
    match: Dict[str, object]
    values: Dict[str, object] = field(default_factory=dict)
    update: bool = True
    stage: str = ""

    def render(self) -> List[str]:
        where = _pairs(self.match, " and ")
        add_args = _pairs({**self.match, **self.values}, " ")
        lines = [
            ":do {",
            f":local found [{self.menu}/find where {where}]",
        ]
        if self.update and self.values:
            set_args = _pairs(self.values, " ")
            lines.append(
                f":if ([:len $found] = 0) do={{ {self.menu}/add {add_args} }} "
                f"else={{ {self.menu}/set $found {set_args} }}"
            )
        else:
            lines.append(f":if ([:len $found] = 0) do={{ {self.menu}/add {add_args} }}")
        lines.append(f"}} on-error={{ {log_call((self.stage or 'ensure') + '-failed')} }}")
        return lines


def log_call(stage: str) -> str:
    return f'$safeFetch ($logBase . "{escape(stage)}")'


def step(stage: str, body: List[str]) -> List[str]:
    """Wrap commands so a failure is logged and the script continues."""
    return [":do {", *body, f"}} on-error={{ {log_call(stage + '-failed')} }}"]


@dataclass
class ScriptSettings:
    """Deployment facts baked into every script."""
    subnet: str = "10.10.10.0/24"
    server_address: str = "10.10.10.1"
    endpoint_address: str = ""
    endpoint_port: int = 51820
    server_public_key: str = ""
    device_interface: str = "wireguard"
    device_listen_port: int = 13231
    device_peer_name: str = "fleetpeer"
    mtu: int = 1420
    keepalive: int = 10
    api_port: int = 8728
    min_major_version: int = 7
    probe_count: int = 3
    scheduler_name: str = "fleetlink-reconnect"
    script_file: str = "fleetlink-auto.rsc"
    dns_servers: str = "8.8.8.8,1.1.1.1"
    base_domain: str = ""
    public_ip_lookup_host: str = "api64.ipify.org"
    routeros_base_url: str = ""

    @classmethod
    def from_config(cls, config: Config) -> "ScriptSettings":
        tunnel = config.tunnel
        prov = config.provisioning
        return cls(
            subnet=tunnel.subnet,
            server_address=tunnel.server_address,
            endpoint_address=tunnel.endpoint_address,
            endpoint_port=tunnel.endpoint_port,
            server_public_key=tunnel.server_public_key,
            device_interface=tunnel.device_interface,
            device_listen_port=tunnel.device_listen_port,
            device_peer_name=tunnel.device_peer_name,
            mtu=tunnel.mtu,
            keepalive=tunnel.keepalive,
            api_port=config.device.api_port,
            min_major_version=prov.min_major_version,
            probe_count=prov.probe_count,
            scheduler_name=prov.scheduler_name,
            script_file=prov.script_file,
            dns_servers=prov.dns_servers,
            base_domain=prov.base_domain,
            public_ip_lookup_host=prov.public_ip_lookup_host,
            routeros_base_url=prov.routeros_base_url,
        )

    @property
    def subnet_prefix(self) -> str:
        """Text prefix of the subnet's addresses, e.g. '10.10.10.'."""
        base = self.subnet.split("/")[0]
        return base.rsplit(".", 1)[0] + "."


class ScriptGenerator:
    """Renders the auto-configuration script for a prepared session."""

    def __init__(self, settings: ScriptSettings):
        self.settings = settings

    def urls(self, session: ProvisioningSession, server_base_url: str) -> Dict[str, str]:
        base = server_base_url.rstrip("/")
        token = session.token
        return {
            "log": f"{base}/provisioning/log?token={token}&msg=",
            "complete": f"{base}/provisioning/complete?token={token}",
            "script": (
                f"{base}/provisioning/script?token={token}"
                f"&server={quote(base, safe='')}"
                f"&name={quote(session.name, safe='')}"
                f"&mode={session.mode.value}"
            ),
            "routeros": (self.settings.routeros_base_url or f"{base}/routeros").rstrip("/"),
        }

    def render(self, session: ProvisioningSession, server_base_url: str) -> str:
        """
        Render the script.

        Raises:
            ProvisioningError: the session lacks an address or credentials,
                or is in RADIUS mode without server address and secret.
        """
        if not session.host or not session.api_user or not session.api_password:
            raise ProvisioningError("Session has not been prepared")
        if session.is_radius and not (session.radius_server_ip and session.radius_client_secret):
            raise ProvisioningError("Missing RADIUS server IP or client secret")

        urls = self.urls(session, server_base_url)
        sections = [
            self._header(session, urls),
            self._device_mode(),
            self._version_gate(),
            self._conflicts(),
            self._bridge(),
            self._tunnel(),
            self._probe(),
            self._management(),
            self._firewall(),
            self._dns(),
            self._walled_garden(),
            self._api_user(),
            self._radius(session) if session.is_radius else [],
            self._completion(),
        ]

        lines = [line for section in sections for line in section]
        logger.debug(f"Rendered {len(lines)} script lines for session on {session.host}")
        return "\n".join(lines) + "\n"

    def _header(self, session: ProvisioningSession, urls: Dict[str, str]) -> List[str]:
        s = self.settings
        on_event = (
            f':delay 5s; '
            f':do {{ /tool fetch url="{urls["log"]}router-rebooted" keep-result=no }} on-error={{}}; '
            f'/system/scheduler/remove [find name="{s.scheduler_name}"]; '
            f':do {{ /tool fetch url="{urls["script"]}" dst-path="{s.script_file}" }} on-error={{}}; '
            f'/import file-name="{s.script_file}"; '
            f':do {{ /file/remove "{s.script_file}" }} on-error={{}}'
        )
        return [
            f":local token {quote_value(session.token)}",
            f":local logBase {quote_value(urls['log'])}",
            f":local completeUrl {quote_value(urls['complete'])}",
            f":local scriptUrl {quote_value(urls['script'])}",
            f":local routerosBase {quote_value(urls['routeros'])}",
            f":local routerName {quote_value(session.name)}",
            f":local internalIp {quote_value(session.host)}",
            f":local apiUser {quote_value(session.api_user)}",
            f":local apiPass {quote_value(session.api_password)}",
            ":local safeFetch do={ :local u $1; :do { /tool fetch url=$u keep-result=no } on-error={} }",
            ":local ensureReconnect do={",
            f':if ([:len [/system/scheduler/find name="{escape(s.scheduler_name)}"]] = 0) do={{',
            f'/system/scheduler/add name="{escape(s.scheduler_name)}" start-time=startup '
            f"on-event={quote_value(on_event)}",
            "}",
            "}",
            log_call("start"),
        ]

    def _device_mode(self) -> List[str]:
        return [
            ":do {",
            ":local mode [/system/device-mode/get mode]",
            ':if ($mode != "advanced") do={',
            log_call("device-mode-updating"),
            "/system/device-mode/update mode=advanced",
            "$ensureReconnect",
            log_call("device-mode-reboot"),
            "/system/reboot",
            "}",
            f"}} on-error={{ {log_call('device-mode-check-failed')} }}",
        ]

    def _version_gate(self) -> List[str]:
        return [
            ":local rosVer [/system/resource/get version]",
            ":local arch [/system/resource/get architecture-name]",
            ':local rosMajor [:tonum [:pick $rosVer 0 [:find $rosVer "."]]]',
            f":if ($rosMajor < {int(self.settings.min_major_version)}) do={{",
            log_call("routeros-upgrade-required"),
            ':local pkgBase ($routerosBase . "/" . $arch)',
            '/tool fetch url=($pkgBase . "/routeros.npk") dst-path="routeros.npk" keep-result=yes',
            ':do { /tool fetch url=($pkgBase . "/wireless.npk") dst-path="wireless.npk" keep-result=yes } '
            f"on-error={{ {log_call('wireless-package-missing')} }}",
            ':do { /tool fetch url=($pkgBase . "/hotspot.npk") dst-path="hotspot.npk" keep-result=yes } '
            f"on-error={{ {log_call('hotspot-package-missing')} }}",
            log_call("routeros-packages-downloaded"),
            "$ensureReconnect",
            log_call("rebooting-for-upgrade"),
            "/system/reboot",
            "}",
        ]

    def _conflicts(self) -> List[str]:
        prefix = escape(self.settings.subnet_prefix)
        find_addr = f':set conflictAddr [/ip/address/find where address~"{prefix}"]'
        find_pool = f':set conflictPool [/ip/pool/find where ranges~"{prefix}"]'
        find_ip = ':set ipInUse [/ip/address/find where address=($internalIp . "/24")]'
        in_use = "(([:len $conflictAddr] > 0) || ([:len $conflictPool] > 0) || ([:len $ipInUse] > 0))"
        return [
            ":local conflictAddr \"\"",
            ":local conflictPool \"\"",
            ":local ipInUse \"\"",
            find_addr,
            find_pool,
            find_ip,
            f":if {in_use} do={{",
            log_call("ip-conflict"),
            "/ip/address/remove $conflictAddr",
            "/ip/pool/remove $conflictPool",
            ":delay 1s",
            find_addr,
            find_pool,
            find_ip,
            f":if {in_use} do={{",
            log_call("ip-conflict-unresolved"),
            f':error "{escape(self.settings.subnet)} already in use"',
            "}",
            "}",
        ]

    def _bridge(self) -> List[str]:
        return [
            ':local bridgeName ""',
            ":local bridgeIds [/interface/bridge/find]",
            ":if ([:len $bridgeIds] > 0) do={ :set bridgeName [/interface/bridge/get ([:pick $bridgeIds 0]) name] }",
            ':if ([:len $bridgeName] = 0) do={ /interface/bridge/add name=bridge; :set bridgeName "bridge" }',
            *EnsureObject("/interface/list", {"name": "LAN"}, stage="interface-list").render(),
        ]

    def _tunnel(self) -> List[str]:
        s = self.settings
        iface = s.device_interface
        lines = [
            *EnsureObject(
                "/interface/wireguard",
                {"name": iface},
                {"listen-port": s.device_listen_port, "mtu": s.mtu},
                stage="wireguard-interface",
            ).render(),
            log_call("wireguard-interface-ready"),
            *EnsureObject(
                "/ip/address",
                {"address": Raw('($internalIp . "/24")'), "interface": iface},
                update=False,
                stage="wireguard-ip",
            ).render(),
            log_call("wireguard-ip-assigned"),
            *step("wireguard-peer-cleanup", [
                f'/interface/wireguard/peers/remove [find where interface="{escape(iface)}" '
                f'and public-key!="{escape(s.server_public_key)}"]',
            ]),
            *EnsureObject(
                "/interface/wireguard/peers",
                {"interface": iface, "public-key": s.server_public_key},
                {
                    "name": s.device_peer_name,
                    "endpoint-address": s.endpoint_address,
                    "endpoint-port": s.endpoint_port,
                    "allowed-address": f"{s.server_address}/32",
                    "persistent-keepalive": s.keepalive,
                },
                stage="wireguard-peer",
            ).render(),
            log_call("wireguard-peer-ready"),
        ]
        return lines

    def _probe(self) -> List[str]:
        # The server only learns this device's key at completion, so a
        # failed probe is reported but does not stop the script.
        s = self.settings
        return [
            ":delay 10s",
            ":do {",
            ":local probeOk false",
            f":for i from=1 to={int(s.probe_count)} do={{",
            f':if ($probeOk = false) do={{ :if ([/ping {s.server_address} count=1] > 0) do={{ :set probeOk true }} else={{ :delay 2s }} }}',
            "}",
            f":if ($probeOk) do={{ {log_call('ping-server-ok')} }} else={{ {log_call('ping-server-failed')} }}",
            f"}} on-error={{ {log_call('ping-server-error')} }}",
        ]

    def _management(self) -> List[str]:
        s = self.settings
        return [
            *step("api-access", [
                f'/ip/service/set api address="{escape(s.subnet)}" port={int(s.api_port)} disabled=no',
                "/ip/service/set www-ssl disabled=no",
                "/ip/service/set ftp disabled=no",
            ]),
            log_call("api-access-enabled"),
        ]

    def _firewall(self) -> List[str]:
        s = self.settings
        return [
            *EnsureObject(
                "/ip/firewall/filter",
                {"comment": "Allow API from WireGuard"},
                {"chain": "input", "src-address": s.subnet, "protocol": "tcp",
                 "dst-port": s.api_port, "action": "accept"},
                stage="firewall-api",
            ).render(),
            *EnsureObject(
                "/ip/firewall/filter",
                {"comment": "Allow WireGuard"},
                {"chain": "input", "protocol": "udp", "dst-port": s.device_listen_port,
                 "action": "accept"},
                stage="firewall-wireguard",
            ).render(),
            *EnsureObject(
                "/ip/firewall/filter",
                {"comment": "Allow tunnel subnet"},
                {"chain": "input", "src-address": s.subnet, "action": "accept"},
                stage="firewall-subnet",
            ).render(),
            *EnsureObject(
                "/interface/list/member",
                {"list": "LAN", "interface": s.device_interface},
                update=False,
                stage="interface-list-member",
            ).render(),
            log_call("firewall-rules-set"),
        ]

    def _dns(self) -> List[str]:
        return step("dns", [
            f'/ip/dns/set servers="{escape(self.settings.dns_servers)}" allow-remote-requests=yes',
        ])

    def _walled_garden(self) -> List[str]:
        s = self.settings
        hosts = []
        if s.base_domain:
            hosts += [s.base_domain, f"*.{s.base_domain}"]
        if s.public_ip_lookup_host:
            hosts.append(s.public_ip_lookup_host)

        lines: List[str] = []
        for host in hosts:
            lines += EnsureObject(
                "/ip/hotspot/walled-garden",
                {"dst-host": host},
                {"action": "allow"},
                stage="walled-garden",
            ).render()
        return lines

    def _api_user(self) -> List[str]:
        return [
            *EnsureObject(
                "/user",
                {"name": Raw("$apiUser")},
                {"password": Raw("$apiPass"), "group": "full"},
                stage="api-user",
            ).render(),
            log_call("api-user-ready"),
        ]

    def _radius(self, session: ProvisioningSession) -> List[str]:
        return [
            log_call("radius-config-start"),
            *EnsureObject(
                "/radius",
                {"address": session.radius_server_ip},
                {"secret": session.radius_client_secret, "service": "ppp,hotspot",
                 "timeout": Raw("300ms")},
                stage="radius",
            ).render(),
            *step("radius-incoming", ["/radius/incoming/set accept=yes"]),
            *step("radius-aaa", ["/ppp/aaa/set use-radius=yes accounting=yes interim-update=1m"]),
            log_call("radius-config-done"),
        ]

    def _completion(self) -> List[str]:
        s = self.settings
        lookup: Optional[str] = s.public_ip_lookup_host
        lines = [
            ":do { /ip/cloud/set ddns-enabled=yes } on-error={}",
            ":delay 5s",
            ':local ddns ""',
            ':local publicIp ""',
            ":do { :set ddns [/ip/cloud/get dns-name] } on-error={}",
            ":do { :set publicIp [/ip/cloud/get public-address] } on-error={}",
        ]
        if lookup:
            lines.append(
                f':if ([:len $publicIp] = 0) do={{ :do {{ :local lookup [/tool fetch url="https://{escape(lookup)}" '
                f'as-value output=user]; :if ([:typeof ($lookup->"data")] = "str") do={{ :set publicIp ($lookup->"data") }} }} on-error={{}} }}'
            )
        lines += [
            ":if ([:len $ddns] = 0) do={ :set ddns $publicIp }",
            f':local pubkey [/interface/wireguard/get [find name="{escape(s.device_interface)}"] public-key]',
            log_call("completing"),
            '$safeFetch ($completeUrl . "&publicKey=" . $pubkey . "&ddns=" . $ddns . "&publicIp=" . $publicIp'
            ' . "&user=" . $apiUser . "&pass=" . $apiPass . "&host=" . $internalIp . "&name=" . $routerName)',
        ]
        return lines
