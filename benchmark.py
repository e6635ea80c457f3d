import argparse
import asyncio
import logging
import re
import sys
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

import aiohttp

from gcloud_cli import GcloudCompute, basename
from gcp_lb import get_lb_addresses
from instance_manager import install_bench_tools, load_generator_instance, load_generator_step
from lab_config import configure_logging, load_config, resolve_project, validate
from lab_errors import BenchmarkParseError, LabError
from monitor import StatusReporter, render_instance_groups
from pipeline import Orchestrator, fixed_answer, terminal_confirm
from readiness import Poller, serves_marker

logger = logging.getLogger(__name__)

# ab writes these next to itself on the load generator; we only read the report back
AB_OUTPUT_FILE = 'stress_test_output.txt'
AB_TSV_FILE = 'stress_test_results.tsv'

# Apache Bench report lines we understand, e.g.
#   Complete requests:      500000
#   Failed requests:        0
#   Non-2xx responses:      12
#   Requests per second:    1234.56 [#/sec] (mean)
#   Time per request:       810.123 [ms] (mean)
# Complete/Failed are required; the rest are optional.
AB_PATTERNS = {
    'complete_requests': re.compile(r'Complete requests:\s*(\d+)'),
    'failed_requests': re.compile(r'Failed requests:\s*(\d+)'),
    'non_2xx_responses': re.compile(r'Non-2xx responses:\s*(\d+)'),
    'requests_per_second': re.compile(r'Requests per second:\s*([\d.]+)'),
    'time_per_request_ms': re.compile(r'Time per request:\s*([\d.]+) \[ms\] \(mean\)'),
}


@dataclass
class BenchmarkSummary:
    complete_requests: int
    failed_requests: int
    non_2xx_responses: int = 0
    requests_per_second: Optional[float] = None
    time_per_request_ms: Optional[float] = None


def parse_ab_output(text):
    """Pull the summary counters out of an ab report."""
    found = {}
    for key, pattern in AB_PATTERNS.items():
        match = pattern.search(text or '')
        if match:
            found[key] = match.group(1)

    missing = [k for k in ('complete_requests', 'failed_requests') if k not in found]
    if missing:
        tail = "\n".join((text or '').strip().splitlines()[-5:])
        raise BenchmarkParseError(f"Benchmark report is missing {', '.join(missing)}. Last lines:\n{tail}")

    return BenchmarkSummary(
        complete_requests=int(found['complete_requests']),
        failed_requests=int(found['failed_requests']),
        non_2xx_responses=int(found.get('non_2xx_responses', 0)),
        requests_per_second=float(found['requests_per_second']) if 'requests_per_second' in found else None,
        time_per_request_ms=float(found['time_per_request_ms']) if 'time_per_request_ms' in found else None,
    )


def ab_command(address, num_requests, concurrency):
    return (f"ab -n {num_requests} -c {concurrency} -g {AB_TSV_FILE} http://{address}/ "
            f"> {AB_OUTPUT_FILE} 2>&1; cat {AB_OUTPUT_FILE}")


def render_summary(summary):
    lines = ["=== Test Summary ===",
             f"Complete requests:   {summary.complete_requests}",
             f"Failed requests:     {summary.failed_requests}"]
    if summary.non_2xx_responses:
        lines.append(f"Non-2xx responses:   {summary.non_2xx_responses}")
    if summary.requests_per_second is not None:
        lines.append(f"Requests per second: {summary.requests_per_second:.2f} [#/sec] (mean)")
    if summary.time_per_request_ms is not None:
        lines.append(f"Time per request:    {summary.time_per_request_ms:.3f} [ms] (mean)")
    return "\n".join(lines)


# Local engine: drive the load from this machine instead of a VM

async def call_endpoint_http(session, url):
    try:
        async with session.get(url) as response:
            # We read the text to ensure the request fully completed
            await response.text()
            return response.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.debug(f"Request failed: {e}")
        return None


async def run_local_benchmark(url, num_requests, concurrency, timeout=30.0):
    """Keep `concurrency` requests in flight until `num_requests` were sent."""
    statuses = []
    remaining = num_requests

    async def worker(session):
        nonlocal remaining
        while remaining > 0:
            remaining -= 1
            statuses.append(await call_endpoint_http(session, url))

    start_time = time.time()
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        await asyncio.gather(*(worker(session) for _ in range(min(concurrency, num_requests))))
    total_time = time.time() - start_time

    complete = sum(1 for s in statuses if s is not None)
    return BenchmarkSummary(
        complete_requests=complete,
        failed_requests=len(statuses) - complete,
        non_2xx_responses=sum(1 for s in statuses if s is not None and not 200 <= s < 300),
        requests_per_second=complete / total_time if total_time else None,
        # ab's definition: concurrency * time taken / completed requests
        time_per_request_ms=concurrency * total_time * 1000 / complete if complete else None,
    )


def run_remote_benchmark(api, config, address):
    host = load_generator_instance(config)
    logger.info("Creating stress test VM...")
    Orchestrator([load_generator_step(api, config)]).provision()
    install_bench_tools(api, host)

    logger.info("Testing basic connectivity from stress test VM...")
    print(api.ssh(host, f"curl -m 10 -s http://{address}/ | head -5"))

    logger.info(f"Starting stress test: {config.benchmark_requests} requests, "
                f"{config.benchmark_concurrency} concurrent connections. This may take a while.")
    output = api.ssh(host, ab_command(address, config.benchmark_requests, config.benchmark_concurrency))
    return parse_ab_output(output)


def sample_forever(reporter, address, poller=None, out=print):
    """One timestamped probe per second until interrupted."""
    poller = poller or Poller(1.0)

    def sample():
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        out(f"{timestamp} - Response: {reporter.probe(address)}")

    return poller.repeat(sample)


def run_stress_test(api, config, reporter=None, poller=None, confirm=terminal_confirm, local=False, out=print):
    reporter = reporter or StatusReporter(api, config)

    # 1. Find the load balancer
    ipv4, _ = get_lb_addresses(api, config)
    if not ipv4:
        raise LabError("Load balancer not found. Please run setup first.")
    out(f"Load Balancer IPv4: {ipv4}")

    # 2. Don't hammer something that isn't serving yet
    logger.info("Checking if load balancer is ready...")
    poller = poller or Poller(config.readiness_interval, config.readiness_attempts)
    url = reporter.url(ipv4)
    poller.wait_until(
        lambda: serves_marker(url, config.readiness_marker, config.http_timeout, reporter.http_get),
        "Load balancer",
    )
    logger.info("Load balancer is ready!")

    # 3. Load
    if local:
        summary = asyncio.run(run_local_benchmark(url, config.benchmark_requests, config.benchmark_concurrency))
    else:
        summary = run_remote_benchmark(api, config, ipv4)
    out(render_summary(summary))

    # 4. Did the groups scale?
    logger.info("Checking instance group status...")
    out(render_instance_groups(reporter.instance_groups()))
    out("\n=== Instance Groups Overview ===")
    for group in api.list_resources("instance-groups managed"):
        location = basename(group.get("region") or group.get("zone"))
        out(f"{group.get('name', ''):<16} {location:<16} {group.get('targetSize', '')}")

    # 5. Optional live view
    if confirm("Would you like to run continuous monitoring?"):
        out("Starting continuous monitoring. Press Ctrl+C to stop.")
        try:
            sample_forever(reporter, ipv4, out=out)
        except KeyboardInterrupt:
            out("\nMonitoring stopped.")

    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Stress test the lab load balancer and watch it scale.")
    parser.add_argument('--config', help='YAML file overriding the default lab settings')
    parser.add_argument('-n', '--requests', type=int, help='total number of requests')
    parser.add_argument('-c', '--concurrency', type=int, help='concurrent connections')
    parser.add_argument('--local', action='store_true',
                        help='generate the load from this machine instead of a stress test VM')
    parser.add_argument('--no-monitor', action='store_true', help='skip the continuous monitoring prompt')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        overrides = {}
        if args.requests:
            overrides['benchmark_requests'] = args.requests
        if args.concurrency:
            overrides['benchmark_concurrency'] = args.concurrency
        config = load_config(args.config)
        if overrides:
            config = validate(replace(config, **overrides))

        api = GcloudCompute()
        config = resolve_project(config, api)
        api.project = config.project

        confirm = fixed_answer(False) if args.no_monitor else terminal_confirm
        run_stress_test(api, config, confirm=confirm, local=args.local)
    except LabError as e:
        logger.error(str(e))
        return 1

    print("\nStress test completed!")
    if not args.local:
        print(f"Stress Test VM: {config.stress_vm_name} (in {config.stress_zone})")
        print(f"To view detailed results: gcloud compute ssh {config.stress_vm_name} "
              f"--zone={config.stress_zone} --command='cat {AB_OUTPUT_FILE}'")
    return 0


if __name__ == "__main__":
    sys.exit(main())
