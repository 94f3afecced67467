#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Ordinal Social Topology - ballot ingestion, export and reporting

Loads peer-ranking ballots from a CSV or JSON file, runs the analysis and
writes the results:
- JSON export of {participants, ballots, analytics} (re-importable)
- Excel workbook with per-participant metrics and the pairwise matrix

Ballots can also be collected in an append-only JSON Lines log, where a
later submission by the same voter replaces the earlier one.

Usage:
    python topology_report.py ballots.csv
    python topology_report.py ballots.csv --voter-column --excel --output ./results/
    python topology_report.py export.json --log ballots.jsonl --verbose
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import pandas as pd

from social_topology import (
    AnalyticsResult,
    Ballot,
    Participant,
    analyze,
    get_rank,
    pairwise_frame,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Ballot Loading and Parsing
# =============================================================================

class _Roster:
    """Participants created on first sight, matched by case-insensitive name."""

    def __init__(self):
        self.participants: list[Participant] = []
        self._by_name: dict[str, str] = {}

    def resolve(self, name: str) -> Optional[str]:
        clean = name.strip()
        if not clean:
            return None
        key = clean.casefold()
        if key not in self._by_name:
            pid = f"p{len(self.participants) + 1}"
            self.participants.append(Participant(pid, clean))
            self._by_name[key] = pid
        return self._by_name[key]


def _ranking_from_names(roster: _Roster, names: list[str]) -> list[str]:
    ranking = []
    for name in names:
        pid = roster.resolve(name)
        if pid is not None and pid not in ranking:
            ranking.append(pid)
    return ranking


def _check_loaded(
    participants: list[Participant],
    ballots: list[Ballot],
    filepath: Path
) -> None:
    if len(participants) < 2:
        raise ValueError(
            f"At least 2 unique participants are required, found "
            f"{len(participants)} in {filepath}"
        )
    if not ballots:
        raise ValueError(f"No valid ballots found in {filepath}")


def load_ranking_csv(
    filepath: Path,
    voter_column: bool = False
) -> tuple[list[Participant], list[Ballot]]:
    """
    Load ballots from a CSV file with one ranking per row.

    Each cell is a participant name, most preferred first. Rows may have
    different lengths. Names are matched case-insensitively and repeated
    names within a row are dropped.

    Args:
        filepath: Path to the CSV file
        voter_column: When True, the first cell of each row names the voter.
            Otherwise every row gets a synthetic voter id (v1, v2, ...).

    Returns:
        Tuple of (participants, ballots)

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is empty or holds fewer than 2 participants
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Ballot file not found: {filepath}")

    lines = [line for line in filepath.read_text(encoding="utf-8").splitlines() if line.strip()]
    if not lines:
        raise ValueError(f"Ballot file is empty: {filepath}")

    width = max(line.count(",") for line in lines) + 1
    df = pd.read_csv(
        filepath,
        header=None,
        names=range(width),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
    ).fillna("")

    roster = _Roster()
    ballots = []

    for index, row in enumerate(df.itertuples(index=False), start=1):
        cells = [str(cell) for cell in row]
        if voter_column:
            voter_id = roster.resolve(cells[0])
            if voter_id is None:
                logger.warning("Row %d has no voter name, skipped", index)
                continue
            ranking = [
                pid for pid in _ranking_from_names(roster, cells[1:])
                if pid != voter_id
            ]
        else:
            voter_id = f"v{index}"
            ranking = _ranking_from_names(roster, cells)

        if ranking:
            ballots.append(Ballot(voter_id, tuple(ranking)))

    _check_loaded(roster.participants, ballots, filepath)
    return roster.participants, ballots


def parse_state(data) -> tuple[list[Participant], list[Ballot]]:
    """
    Build participants and ballots from decoded JSON.

    Accepted shapes:
    - an export: {"participants": [...], "ballots": [...], ...}
    - a list of rankings, each a list of names
    - a list of ballot objects {"voterId": ..., "ranking": [...]}

    Raises:
        ValueError: If the data matches none of these shapes
    """
    if isinstance(data, dict) and isinstance(data.get("participants"), list) \
            and isinstance(data.get("ballots"), list):
        try:
            participants = [Participant(str(p["id"]), str(p["name"])) for p in data["participants"]]
            ballots = [
                Ballot(str(b["voterId"]), tuple(str(pid) for pid in b["ranking"]))
                for b in data["ballots"]
            ]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed export: missing field {e}")
        return participants, ballots

    if isinstance(data, list):
        roster = _Roster()
        ballots = []
        for index, item in enumerate(data, start=1):
            if isinstance(item, list):
                names = [name for name in item if isinstance(name, str)]
                ranking = _ranking_from_names(roster, names)
                if ranking:
                    ballots.append(Ballot(f"v{index}", tuple(ranking)))
            elif isinstance(item, dict) and isinstance(item.get("ranking"), list):
                ballots.append(Ballot(
                    str(item.get("voterId", f"v{index}")),
                    tuple(str(pid) for pid in item["ranking"])
                ))
        if len(roster.participants) >= 2:
            return roster.participants, ballots

    raise ValueError(
        "Invalid JSON format. Expected either an export {participants, ballots} "
        "or an array of ranked name arrays."
    )


def load_state_json(filepath: Path) -> tuple[list[Participant], list[Ballot]]:
    """
    Load participants and ballots from a JSON file (see parse_state).

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not valid JSON or has an unknown shape
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Ballot file not found: {filepath}")

    try:
        data = json.loads(filepath.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Ballot file is not valid JSON: {filepath}: {e}")

    participants, ballots = parse_state(data)
    _check_loaded(participants, ballots, filepath)
    return participants, ballots


def load_ballots(
    filepath: Path,
    voter_column: bool = False
) -> tuple[list[Participant], list[Ballot]]:
    """Load a .json or .csv ballot file, picking the parser by extension."""
    if filepath.suffix.lower() == ".json":
        return load_state_json(filepath)
    return load_ranking_csv(filepath, voter_column=voter_column)


def find_ballot_problems(
    participants: list[Participant],
    ballots: list[Ballot]
) -> list[str]:
    """
    List input issues the analysis tolerates but the caller should know about.

    Nothing is raised; malformed entries are ignored by the engine.
    """
    known = {p.id for p in participants}
    names = {p.id: p.name for p in participants}
    problems = []
    seen_voters = set()

    for ballot in ballots:
        voter = names.get(ballot.voter_id, ballot.voter_id)
        if ballot.voter_id in seen_voters:
            problems.append(f"Voter {voter} submitted more than one ballot; the first is used")
        seen_voters.add(ballot.voter_id)

        if get_rank(ballot, ballot.voter_id) > 0:
            problems.append(f"Voter {voter} ranked themselves")
        if len(set(ballot.ranking)) != len(ballot.ranking):
            problems.append(f"Ballot of {voter} repeats a participant")
        unknown = [pid for pid in ballot.ranking if pid not in known]
        if unknown:
            problems.append(f"Ballot of {voter} ranks unknown ids: {', '.join(unknown)}")

    return problems


# =============================================================================
# Export and Ballot Log
# =============================================================================

def export_state(
    participants: list[Participant],
    ballots: list[Ballot],
    analytics: Optional[AnalyticsResult] = None
) -> dict:
    """Plain-data snapshot of the input and its analysis, suitable for JSON."""
    return {
        "participants": [{"id": p.id, "name": p.name} for p in participants],
        "ballots": [
            {"voterId": b.voter_id, "ranking": list(b.ranking)}
            for b in ballots
        ],
        "analytics": analytics.to_dict() if analytics is not None else None,
    }


def write_state_json(
    output_path: Path,
    participants: list[Participant],
    ballots: list[Ballot],
    analytics: Optional[AnalyticsResult] = None
) -> None:
    state = export_state(participants, ballots, analytics)
    output_path.write_text(json.dumps(state, indent=2, ensure_ascii=False), encoding="utf-8")


def append_ballot_log(log_path: Path, ballot: Ballot) -> None:
    """Append one ballot to the JSON Lines log. Existing lines are never touched."""
    record = {
        "voterId": ballot.voter_id,
        "ranking": list(ballot.ranking),
        "recordedAt": time.strftime("%Y-%m-%dT%H:%M:%S"),
    }
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def read_ballot_log(log_path: Path) -> list[Ballot]:
    """
    Replay the ballot log.

    A later record from the same voter supersedes the earlier one but keeps
    the voter's original position.

    Raises:
        FileNotFoundError: If the log doesn't exist
        ValueError: If a line is not a ballot record
    """
    if not log_path.exists():
        raise FileNotFoundError(f"Ballot log not found: {log_path}")

    latest: dict[str, Ballot] = {}
    with open(log_path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                ranking = tuple(str(pid) for pid in record["ranking"])
                ballot = Ballot(str(record["voterId"]), ranking)
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise ValueError(f"Bad record on line {line_number} of {log_path}: {e}")
            latest[ballot.voter_id] = ballot

    return list(latest.values())


# =============================================================================
# Output Generation
# =============================================================================

def build_results_frame(
    results: AnalyticsResult,
    participants: list[Participant]
) -> pd.DataFrame:
    """Per-participant metrics, one row each, in Borda order."""
    names = {p.id: p.name for p in participants}
    rows = []
    for position, pid in enumerate(results.borda_ranking, start=1):
        rows.append({
            'Participant': names[pid],
            'Borda Rank': position,
            'Borda Score': results.borda_scores[pid],
            'In-Degree': results.in_degree_centrality[pid],
            'Betweenness': results.betweenness_centrality[pid],
            'Eigenvector': results.eigenvector_centrality[pid],
            'Leadership': results.leadership_score[pid],
            'K-Core': results.k_core_decomposition[pid],
            'Community': results.communities[pid],
            'Polarization': results.polarization_scores[pid],
            'Rank Entropy': results.individual_entropy[pid],
            'Reciprocity Imbalance': results.reciprocity_imbalance[pid],
            'Loss Aversion': results.loss_aversion_count[pid],
            'Shift If Top Leaves': results.top_node_removal_borda_shift.get(pid),
        })
    return pd.DataFrame(rows)


def build_notes(
    results: AnalyticsResult,
    participants: list[Participant],
    problems: list[str]
) -> list[dict[str, str]]:
    names = {p.id: p.name for p in participants}
    notes = [{'Type': 'INFO', 'Message': f"Structure: {results.stratification_label}"}]

    if results.condorcet_winner is not None:
        notes.append({
            'Type': 'INFO',
            'Message': f"Condorcet winner: {names[results.condorcet_winner]}"
        })
    else:
        notes.append({'Type': 'INFO', 'Message': 'No Condorcet winner'})

    for cycle in results.condorcet_cycles:
        notes.append({
            'Type': 'WARNING',
            'Message': 'Majority cycle: ' + ' > '.join(names[pid] for pid in cycle + cycle[:1])
        })

    if results.marginalized_participants:
        notes.append({
            'Type': 'INFO',
            'Message': 'Consistently ranked low: ' + ', '.join(
                names[pid] for pid in results.marginalized_participants
            )
        })

    for problem in problems:
        notes.append({'Type': 'WARNING', 'Message': problem})
    return notes


def write_results_excel(
    results: AnalyticsResult,
    participants: list[Participant],
    output_path: Path,
    problems: Optional[list[str]] = None
) -> None:
    """
    Create Excel file with analysis results.

    Sheets:
    - Results: per-participant metrics in Borda order
    - Pairwise: how many ballots prefer the row over the column
    - Coalitions: reciprocal cliques (only if any)
    - Notes: structure label, Condorcet outcome, cycles and input problems

    Args:
        results: AnalyticsResult object
        participants: Participants in their canonical order
        output_path: Where to save the Excel file
        problems: Input problems from find_ballot_problems
    """
    names = {p.id: p.name for p in participants}

    with pd.ExcelWriter(output_path) as writer:
        build_results_frame(results, participants).to_excel(
            writer, sheet_name='Results', index=False
        )

        pairwise_frame(results.pairwise_matrix, participants).to_excel(
            writer, sheet_name='Pairwise'
        )

        if results.coalitions:
            coalition_df = pd.DataFrame([
                {
                    'Coalition': index,
                    'Members': ', '.join(names[pid] for pid in coalition),
                    'Size': len(coalition),
                }
                for index, coalition in enumerate(results.coalitions, start=1)
            ])
            coalition_df.to_excel(writer, sheet_name='Coalitions', index=False)

        notes_df = pd.DataFrame(build_notes(results, participants, problems or []))
        notes_df.to_excel(writer, sheet_name='Notes', index=False)


# =============================================================================
# Main Entry Point
# =============================================================================

def process_ballots(
    input_path: Path,
    output_dir: Optional[Path] = None,
    voter_column: bool = False,
    log_path: Optional[Path] = None,
    write_json: bool = True,
    write_excel: bool = False
) -> tuple[list[Participant], Optional[AnalyticsResult]]:
    """
    Load a ballot file, analyze it and write the requested outputs.

    Args:
        input_path: CSV or JSON ballot file
        output_dir: Directory for output files (default: same as input)
        voter_column: First CSV column names the voter
        log_path: Append-only ballot log whose ballots replace or extend the file's
        write_json: Write the JSON export
        write_excel: Write the Excel workbook

    Returns:
        Tuple of (participants, results); results is None when the input
        does not allow an analysis
    """
    if output_dir is None:
        output_dir = input_path.parent

    logger.info("Loading ballots from %s", input_path)
    participants, ballots = load_ballots(input_path, voter_column=voter_column)

    if log_path is not None:
        logged = read_ballot_log(log_path)
        logged_voters = {b.voter_id for b in logged}
        ballots = [b for b in ballots if b.voter_id not in logged_voters] + logged
        logger.info("Merged %d ballots from log %s", len(logged), log_path)

    logger.info("Found %d participants and %d ballots", len(participants), len(ballots))

    problems = find_ballot_problems(participants, ballots)
    for problem in problems:
        logger.warning(problem)

    results = analyze(participants, ballots)
    if results is None:
        return participants, None

    date_str = time.strftime("%Y-%m-%d")
    output_dir.mkdir(parents=True, exist_ok=True)

    if write_json:
        json_path = output_dir / f"topology-results {date_str}.json"
        write_state_json(json_path, participants, ballots, results)
        logger.info("Saved export to %s", json_path)

    if write_excel:
        excel_path = output_dir / f"topology-results {date_str}.xlsx"
        write_results_excel(results, participants, excel_path, problems)
        logger.info("Saved workbook to %s", excel_path)

    return participants, results


def main():
    """Main entry point for command-line usage."""
    parser = argparse.ArgumentParser(
        description="Analyze peer-ranking ballots of a small group",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python topology_report.py ballots.csv
    python topology_report.py ballots.csv --voter-column --excel
    python topology_report.py export.json --output ./results/ --verbose
        """
    )

    parser.add_argument(
        "input",
        type=Path,
        help="Path to a CSV (one ranking per row) or JSON ballot file"
    )

    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=None,
        help="Output directory (default: same as input file)"
    )

    parser.add_argument(
        "--voter-column",
        action="store_true",
        help="The first CSV column names the voter"
    )

    parser.add_argument(
        "--log",
        type=Path,
        default=None,
        help="Append-only ballot log (JSON Lines) to merge into the input"
    )

    parser.add_argument(
        "--excel",
        action="store_true",
        help="Also write an Excel workbook"
    )

    parser.add_argument(
        "--no-json",
        dest="json",
        action="store_false",
        help="Do not write the JSON export"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print progress information"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s"
    )

    try:
        participants, results = process_ballots(
            input_path=args.input,
            output_dir=args.output,
            voter_column=args.voter_column,
            log_path=args.log,
            write_json=args.json,
            write_excel=args.excel
        )
    except (FileNotFoundError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if results is None:
        print("Error: at least 2 participants and 1 ballot are needed", file=sys.stderr)
        sys.exit(1)

    names = {p.id: p.name for p in participants}

    print("\n" + "=" * 60)
    print("GROUP TOPOLOGY")
    print("=" * 60)
    print(f"\nStructure: {results.stratification_label}")
    print(f"Kendall's W: {results.kendall_w:.3f}   Gini: {results.gini_coefficient:.3f}")

    if results.condorcet_winner is not None:
        print(f"Condorcet winner: {names[results.condorcet_winner]}")
    else:
        print(f"No Condorcet winner ({len(results.condorcet_cycles)} majority cycles)")

    print("\nRanking (by Borda score):\n")
    for i, pid in enumerate(results.borda_ranking):
        score = results.borda_scores[pid]
        leadership = results.leadership_score[pid]
        print(f"  {i + 1}.{'':2} {names[pid]:40} (Borda: {score:4d}, leadership: {leadership:+.2f})")

    print("\n" + "=" * 60)


if __name__ == "__main__":
    main()
