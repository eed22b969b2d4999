from __future__ import annotations

import os
from dataclasses import asdict
from pathlib import Path

import typer

from debrid_stack.errors import StackError
from debrid_stack.models import CliDebridChannel, Flavor, MediaServer, RequestManager, StackConfig
from debrid_stack.probe import detect_server_address, detect_timezone, probe_host, probe_toolchain
from debrid_stack.reconcile import build_record, find_existing_credential, scan_filesystem, scan_runtime
from debrid_stack.render import render, select_resource_tier
from debrid_stack.runner import local_runner

from .. import console
from ..config import load_config
from .install_cmd import parse_components, parse_services
from .stack_flow import DEFAULT_COMPONENTS, requested_auto_updates, resolve_server_address, with_update_policy


def probe(
        json_out: bool = typer.Option(False, "--json", help="Print raw JSON."),
):
    """Show what this host looks like and what is already installed."""
    runner = local_runner()
    paths = load_config().to_paths()
    profile = probe_host(runner=runner)
    toolchain = probe_toolchain(runner=runner)
    record = build_record(scan_filesystem(paths), scan_runtime(runner))
    data = {
        "host": {**profile.summary(), "render_device": profile.has_render_device},
        "resource_tier": select_resource_tier(profile).value,
        "toolchain": {k: (v.value if hasattr(v, "value") else v) for k, v in asdict(toolchain).items()},
        "installation": {
            "flavor": record.flavor.value,
            "ambiguous": record.ambiguous,
            "services": sorted(s.value for s in record.present_services),
            "config_paths": {s.value: str(p) for s, p in record.config_paths.items()},
        },
    }
    if json_out:
        console.print_json(data)
        return
    console.rule("[bold]Host[/]")
    for key, value in data["host"].items():
        console.print(f"{key}: {value}")
    console.print(f"resource_tier: {data['resource_tier']}")
    console.rule("[bold]Toolchain[/]")
    for key, value in data["toolchain"].items():
        console.print(f"{key}: {value}")
    console.rule("[bold]Installation[/]")
    installation = data["installation"]
    console.print(f"flavor: {installation['flavor']}{' (ambiguous)' if installation['ambiguous'] else ''}")
    console.print(f"containers: {', '.join(installation['services']) or '-'}")


def render_cmd(
        output_dir: Path = typer.Option(Path("rendered"), "--output-dir", help="Where to write the artifacts."),
        flavor: Flavor = typer.Option(Flavor.INDIVIDUAL, "--flavor", help="individual or bundle."),
        credential: str | None = typer.Option(None, "--credential", help="Real-Debrid API key."),
        server_address: str | None = typer.Option(None, "--server-address", help="IPv4 address of this host."),
        timezone: str | None = typer.Option(None, "--timezone", help="IANA timezone."),
        media_server: MediaServer = typer.Option(MediaServer.PLEX, "--media-server"),
        request_manager: RequestManager = typer.Option(RequestManager.OVERSEERR, "--request-manager"),
        components: list[str] | None = typer.Option(None, "--with", help="Optional component. Repeatable."),
        auto_update: list[str] | None = typer.Option(
            None, "--auto-update", help="Service Watchtower may update, e.g. zurg. Repeatable."
        ),
        cli_channel: CliDebridChannel = typer.Option(CliDebridChannel.DEV, "--cli-channel"),
):
    """Render every artifact into a directory without touching the host."""
    settings = load_config()
    paths = settings.to_paths()
    runner = local_runner()
    profile = probe_host(runner=runner)
    toolchain = probe_toolchain(runner=runner)

    key = credential or find_existing_credential(paths)
    if not key:
        console.err("Missing required option: --credential")
        raise typer.Exit(code=2)
    picked = parse_components(components)
    config = StackConfig(
        credential=key,
        server_address=resolve_server_address(server_address, detect_server_address(runner)),
        timezone=timezone or settings.default_timezone or detect_timezone(runner),
        flavor=flavor,
        selected_media_server=media_server,
        selected_request_manager=request_manager,
        optional_components=DEFAULT_COMPONENTS if picked is None else picked,
        resource_tier=select_resource_tier(profile),
        cli_debrid_channel=cli_channel,
        puid=settings.puid,
        pgid=settings.pgid,
    )
    config = with_update_policy(
        config,
        settings.auto_update_schedule,
        requested_auto_updates(config.selected_services(), parse_services(auto_update)),
    )
    try:
        artifacts = render(config, profile, toolchain, paths)
    except StackError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)

    for artifact in artifacts:
        target = output_dir / artifact.path.relative_to(artifact.path.anchor)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(artifact.content, encoding="utf-8")
        os.chmod(target, artifact.mode)
        console.info(f"{artifact.kind.value:<16} {target}")
    console.ok(f"Rendered {len(artifacts)} artifact(s) into {output_dir}")
