"""Command line entry point for trident."""

from pathlib import Path

import click

from trident.errors import ConfigError, InitError

MANUAL = """\
Usage:
  trident [options] -config.path filename.yml

or

  trident [options] -procnames name1,...,nameN [-namemapping k1,v1,...,kN,vN]

The recommended option is to use a rule file, but for convenience the
-procnames/-namemapping options exist as an alternative. The two forms
cannot be combined.

The -children option (default: true) makes any process that otherwise
isn't part of its own group part of the first group found (if any) when
walking the process tree upwards. In other words, resource usage of
subprocesses is added to their parent's usage unless the subprocess
identifies as a different group name.

Command-line process selection (procnames/namemapping):

  Every process not in the procnames list is ignored. Otherwise, all
  processes found are reported on as a group based on the process name
  they share. Here 'process name' refers to the second field of
  /proc/<pid>/stat, which is truncated at 15 chars.

  The -namemapping option assigns a group name based on a combination of
  the process name and command line. For example

    -namemapping "python3,([^/]+)\\.py,java,-jar\\s+([^/]+).jar"

  tracks each different python3 and java -jar invocation separately, as
  "python3:<script>" and "java:<jar>". Processes whose remapped name is
  absent from the procnames list are ignored.

Rule file process selection (filename.yml):

  process_names:
    - name: "{{.Comm}}"
      comm: [bash, sshd]
    - name: "{{.ExeBase}}:{{.Matches.cfg}}"
      exe: [/usr/local/bin/server]
      cmdline: ['--config\\s+(?P<cfg>\\S+)']

  Rules are tried in order and the first match names the process. Template
  fields: .Comm .ExeBase .ExeFull .Username .PID .StartTime .Matches.<name>.

Every collector writes to the local syslog (facility user, severity info)
under its own tag: procinfo, cpu, cpufreq and thermal. Intervals and write
scales are read from the -settings TOML file.
"""


@click.command(context_settings={"help_option_names": ["-h", "-help", "--help"]})
@click.version_option(package_name="trident")
@click.option("-procfs", "procfs", default=None, help="Path to read proc data from")
@click.option("-sysfs", "sysfs", default=None, help="Path to read sys data from")
@click.option(
    "-children",
    "children",
    type=bool,
    is_flag=False,
    flag_value=True,
    default=True,
    show_default=True,
    help="If a proc is tracked, track with it any children that aren't part of their own group",
)
@click.option(
    "-config.path",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to YAML rule file",
)
@click.option("-procnames", "procnames", default="", help="Comma-separated process names")
@click.option(
    "-namemapping", "namemapping", default="", help="Comma-separated name,regex pairs"
)
@click.option(
    "-settings",
    "settings",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to TOML daemon settings",
)
@click.option("-man", "man", is_flag=True, help="Print manual")
def main(
    procfs: str | None,
    sysfs: str | None,
    children: bool,
    config_path: Path | None,
    procnames: str,
    namemapping: str,
    settings: Path | None,
    man: bool,
) -> None:
    """Report process-group, CPU, CPU frequency and thermal usage to syslog."""
    if man:
        click.echo(MANUAL)
        return

    import asyncio

    from trident.config import Config
    from trident.daemon import DaemonOptions, run_daemon

    try:
        config = Config.load(settings)
        if procfs is not None:
            config.paths.procfs = procfs
        if sysfs is not None:
            config.paths.sysfs = sysfs
        options = DaemonOptions(
            rules_path=config_path,
            procnames=procnames,
            namemapping=namemapping,
            track_children=children,
        )
        asyncio.run(run_daemon(config, options))
    except (ConfigError, InitError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
