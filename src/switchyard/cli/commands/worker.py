"""Worker and sweep commands."""

import click

from switchyard.cli.base import CliCommand


@click.command(name="worker")
@click.option("--once", is_flag=True, default=False, help="Process at most one run, then exit")
@click.option("--worker-id", default=None, help="Identifier recorded on claimed runs")
@click.option("--poll-seconds", type=float, default=None, help="Idle wait between claims")
def worker_command(once: bool, worker_id, poll_seconds):
    """Run the job worker in the foreground until interrupted."""
    WorkerCommand().run(once=once, worker_id=worker_id, poll_seconds=poll_seconds)


class WorkerCommand(CliCommand):

    def run(self, *, once, worker_id, poll_seconds):
        from switchyard.worker import run_loop

        self.setup_db()
        try:
            try:
                run_loop(self.runtime, once=once, worker_id=worker_id, poll_seconds=poll_seconds)
            except KeyboardInterrupt:
                click.echo("Worker interrupted")
        finally:
            self.cleanup_db()


@click.command(name="sweep")
@click.option("--drain", is_flag=True, default=False, help="Also execute every run that is available now")
def sweep_command(drain: bool):
    """Re-enqueue due or lost work once and purge expired job locks."""
    SweepCommand().run(drain=drain)


class SweepCommand(CliCommand):

    def run(self, *, drain):
        from switchyard.worker import run_pending, sweep_once

        self.setup_db()
        try:
            counts = sweep_once(self.runtime)
            click.echo(
                f"Re-enqueued {counts['inbound']} inbound event(s), {counts['outbound']} outbound job(s); "
                f"purged {counts['locks']} expired lock(s)"
            )
            if drain:
                processed = run_pending(self.runtime)
                click.echo(f"Executed {processed} run(s)")
        finally:
            self.cleanup_db()
