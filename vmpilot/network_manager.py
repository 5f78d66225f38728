"""Network isolation for VMs using host firewall rules.

Each running VM exposes one forwarded SSH port on the host. Isolation puts a
default-deny rule on that port and punches one allow rule per permitted
source, so that the chain evaluates the allow rules (in the order given)
before the deny. Rules are tagged with an iptables comment naming the VM so
the live rule set can be read back later.
"""
from __future__ import annotations

import ipaddress
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from . import logging_config
from .errors import NotRunningError
from .schemas import IsolationResult, NetworkStatus, VMDefinition, VMState

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_NETWORK)

TAG_PREFIX = "vmpilot"
COMMENT_RE = re.compile(r'--comment\s+"?([^"\s]+)"?')


@dataclass
class FirewallRule:
    """One rule of a VM's isolation rule set."""
    action: str  # "DROP" or "ACCEPT"
    port: int
    tag: str
    source: Optional[str] = None

    def spec(self) -> List[str]:
        args = ["-p", "tcp"]
        if self.source:
            args.extend(["-s", self.source])
        args.extend(["--dport", str(self.port),
                     "-m", "comment", "--comment", self.tag,
                     "-j", self.action])
        return args

    def describe(self) -> str:
        source = self.source or "any"
        return f"{self.action} tcp from {source} to port {self.port}"


def vm_tag(vm_name: str, vpn_enabled: bool = False) -> str:
    tag = f"{TAG_PREFIX}:{vm_name}"
    return f"{tag}:vpn" if vpn_enabled else tag


class NetworkIsolationManager:
    """Computes, applies and reports per-VM firewall isolation."""

    def __init__(
        self,
        chain: Optional[str] = None,
        iptables_bin: Optional[str] = None,
        dry_run: Optional[bool] = None
    ):
        """Initialize the isolation manager.

        Args:
            chain: Firewall chain holding the rules (default: VMPILOT_FIREWALL_CHAIN or INPUT)
            iptables_bin: iptables executable (default: VMPILOT_IPTABLES_BIN or iptables)
            dry_run: Log commands instead of running them (default: VMPILOT_NETWORK_DRY_RUN=1)
        """
        self.chain = chain or os.environ.get("VMPILOT_FIREWALL_CHAIN", "INPUT")
        self.iptables_bin = iptables_bin or os.environ.get("VMPILOT_IPTABLES_BIN", "iptables")
        if dry_run is None:
            dry_run = os.environ.get("VMPILOT_NETWORK_DRY_RUN") == "1"
        self.dry_run = dry_run

        logger.info(
            f"NetworkIsolationManager initialized: chain={self.chain}, "
            f"iptables={self.iptables_bin}, dry_run={self.dry_run}"
        )

    def _run_command(self, cmd: list[str], check: bool = True) -> subprocess.CompletedProcess:
        """Run a system command."""
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=10
            )
            if check and result.returncode != 0:
                raise RuntimeError(f"Command failed: {' '.join(cmd)} - {result.stderr.strip()}")
            return result
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"Command timed out: {' '.join(cmd)}")
        except OSError as e:
            raise RuntimeError(f"Command could not run: {' '.join(cmd)} - {e}")

    @staticmethod
    def normalize_allow_list(allow_list: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Parse allow-list entries as IPs or CIDRs.

        Returns:
            (sources, warnings): valid sources in first-seen order, and one
            warning per rejected entry.
        """
        sources: List[str] = []
        warnings: List[str] = []
        for entry in allow_list:
            entry = (entry or "").strip()
            if not entry:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                warnings.append(f"Ignoring invalid allow-list entry '{entry}'")
                continue
            source = str(network.network_address) if network.num_addresses == 1 else str(network)
            if source not in sources:
                sources.append(source)
        return sources, warnings

    def build_rules(self, vm: VMDefinition, sources: Iterable[str],
                    vpn_enabled: bool = False) -> List[FirewallRule]:
        tag = vm_tag(vm.name, vpn_enabled)
        rules = [FirewallRule(action="DROP", port=vm.ssh_port, tag=tag)]
        for source in sources:
            rules.append(FirewallRule(action="ACCEPT", port=vm.ssh_port, tag=tag, source=source))
        return rules

    def isolate(self, vm: VMDefinition, allow_list: Iterable[str],
                vpn_enabled: bool = False) -> IsolationResult:
        """Restrict the VM's forwarded port to ``allow_list``.

        Application is best-effort per rule: a failing rule becomes a warning
        and the remaining rules are still applied.

        Raises:
            NotRunningError: The VM is not running; no rule is applied.
        """
        if vm.status != VMState.RUNNING:
            raise NotRunningError(f"VM '{vm.name}' must be running to configure network isolation")

        sources, warnings = self.normalize_allow_list(allow_list)
        rules = self.build_rules(vm, sources, vpn_enabled)

        applied: List[str] = []
        # DROP goes to the top first, then allow rules are inserted above it
        # at increasing positions so they keep the caller's order.
        position = 1
        for index, rule in enumerate(rules):
            insert_at = 1 if index == 0 else position
            cmd = [self.iptables_bin, "-I", self.chain, str(insert_at)] + rule.spec()
            if self.dry_run:
                logger.info("dry-run: would run %s", " ".join(cmd))
            else:
                try:
                    self._run_command(cmd)
                except RuntimeError as e:
                    message = f"Failed to apply firewall rule '{rule.describe()}': {e}"
                    logger.warning(message)
                    warnings.append(message)
                    continue
            applied.append(rule.describe())
            if index > 0:
                position += 1

        if vpn_enabled:
            logger.info("VPN isolation requested for VM %s; tunnel setup is external", vm.name)

        mode = "isolated+vpn" if vpn_enabled else "isolated"
        logger.info("Network isolation for VM %s: %d/%d rules applied", vm.name, len(applied), len(rules))
        return IsolationResult(
            vm_name=vm.name,
            mode=mode,
            forwarded_port=vm.ssh_port,
            vpn_enabled=vpn_enabled,
            applied_rules=applied,
            warnings=warnings,
        )

    def status(self, vm: VMDefinition) -> NetworkStatus:
        """Read back the rules tagged for this VM's forwarded port."""
        cmd = [self.iptables_bin, "-S", self.chain]
        if self.dry_run:
            logger.info("dry-run: would run %s", " ".join(cmd))
            return NetworkStatus(vm_name=vm.name, mode="unknown", forwarded_port=vm.ssh_port,
                                 warnings=["Firewall state not queried in dry-run mode"])
        try:
            result = self._run_command(cmd)
        except RuntimeError as e:
            logger.warning("Unable to check firewall status: %s", e)
            return NetworkStatus(vm_name=vm.name, mode="unknown", forwarded_port=vm.ssh_port,
                                 warnings=[f"Unable to check firewall status: {e}"])

        tag = vm_tag(vm.name)
        port_token = f"--dport {vm.ssh_port}"
        active = []
        vpn_enabled = False
        for line in result.stdout.splitlines():
            line = line.strip()
            if port_token not in line:
                continue
            match = COMMENT_RE.search(line)
            if not match or match.group(1) not in (tag, f"{tag}:vpn"):
                continue
            if match.group(1).endswith(":vpn"):
                vpn_enabled = True
            active.append(line)

        if active:
            mode = "isolated+vpn" if vpn_enabled else "isolated"
        else:
            mode = "open"
        return NetworkStatus(
            vm_name=vm.name,
            mode=mode,
            forwarded_port=vm.ssh_port,
            vpn_enabled=vpn_enabled,
            active_rules=active,
        )
