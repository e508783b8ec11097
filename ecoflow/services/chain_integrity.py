"""
Chain integrity scan.

Walks every chain and reports rows that break the version-chain rules:
exactly one latest row, versions 1..N without gaps, and each version's
parent pointing at the previous one.  Used by ``flask verify-chains``.
"""

from ecoflow.models.change_order import ECO_STATUSES
from ecoflow.services.chain_repository import ChainRepository


def check_chain(versions: list) -> list[str]:
    """Problems found in one chain (rows ordered by version)."""
    problems = []
    if not versions:
        return problems

    latest = [v for v in versions if v.is_latest]
    if len(latest) != 1:
        problems.append(f"expected 1 latest version, found {len(latest)}")

    numbers = [v.version for v in versions]
    if numbers != list(range(1, len(versions) + 1)):
        problems.append(f"versions not contiguous: {numbers}")

    root = versions[0]
    if root.id != root.chain_root_id or root.parent_id is not None:
        problems.append("version 1 is not the chain root")

    for prev, cur in zip(versions, versions[1:]):
        if cur.parent_id != prev.id:
            problems.append(f"v{cur.version} parent is {cur.parent_id}, expected {prev.id}")

    for v in versions:
        if v.status not in ECO_STATUSES:
            problems.append(f"v{v.version} has unknown status {v.status!r}")

    if latest and latest[0].version != numbers[-1]:
        problems.append(f"latest flag on v{latest[0].version}, highest version is v{numbers[-1]}")
    return problems


def verify_chains(repository: ChainRepository) -> dict[str, list[str]]:
    """chain_root_id → problems, for every chain with at least one problem."""
    report = {}
    for root in repository.list_chain_roots():
        problems = check_chain(repository.list_chain(root))
        if problems:
            report[root] = problems
    return report
