# utils/cloudinit.py
from __future__ import annotations

import shlex

from utils.cost import region_config


def _indent(text: str, spaces: int) -> str:
    pad = " " * spaces
    return "\n".join(pad + line for line in text.splitlines())


def generate_cloud_init(
    region: str,
    webhook_url: str,
    webhook_secret: str,
    rcon_password: str,
    rcon_port: int,
) -> str:
    """cloud-config that boots the game server, enables RCON and calls back ``ready``.

    Every value that came from configuration goes through ``shlex.quote`` and
    sits inside a YAML literal block, so YAML passes it through untouched and
    the shell sees exactly one level of quoting.
    """
    region_config(region)  # reject unknown regions early
    url = webhook_url.rstrip("/")
    props = "/opt/minecraft/server.properties"

    env_file = "\n".join([
        f"WEBHOOK_URL={shlex.quote(url)}",
        f"WEBHOOK_SECRET={shlex.quote(webhook_secret)}",
        f"REGION={region}",
    ])
    rcon_cmd = "printf '%s\\n' enable-rcon=true {} {} >> {}".format(
        shlex.quote(f"rcon.port={rcon_port}"),
        shlex.quote(f"rcon.password={rcon_password}"),
        props,
    )
    ready_body = '{"serverId": "\'"$INSTANCE_ID"\'", "ip": "\'"$VPS_IP"\'", "region": "%s"}' % region
    ready_cmd = "\n".join([
        "VPS_IP=$(curl -s http://169.254.169.254/hetzner/v1/metadata/public-ipv4)",
        "INSTANCE_ID=$(curl -s http://169.254.169.254/hetzner/v1/metadata/instance-id)",
        f"curl -sf -X POST {shlex.quote(url + '/ready')} \\",
        f"  -H {shlex.quote('Authorization: Bearer ' + webhook_secret)} \\",
        '  -H "Content-Type: application/json" \\',
        f"  -d '{ready_body}'",
    ])

    return f"""#cloud-config

package_update: true

packages:
  - openjdk-17-jdk-headless
  - rclone
  - jq
  - curl

write_files:
  - path: /opt/minecraft/.env
    permissions: '0600'
    content: |
{_indent(env_file, 6)}

runcmd:
  - useradd -m -s /bin/bash minecraft || true
  - mkdir -p /opt/minecraft/logs /opt/minecraft/world
  - sed -i '/^enable-rcon=/d;/^rcon\\./d' {props} 2>/dev/null || true
  - |
{_indent(rcon_cmd, 4)}
  - chown -R minecraft:minecraft /opt/minecraft
  - systemctl daemon-reload
  - systemctl enable --now minecraft mc-watchdog
  - |
{_indent(ready_cmd, 4)}

final_message: "grovemc {region} ready after $UPTIME seconds"
"""
