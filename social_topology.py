#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Ordinal Social Topology - computation engine

Takes the peer-ranking ballots of a small group (every member ranks every
other member) and derives the group's structure:
1. Social choice: pairwise matrix, Borda scores, Condorcet analysis, Kendall's W
2. Graph and network metrics: centralities, reciprocity, k-cores, communities
3. Inequality and information: Gini, Lorenz curve, entropy, mutual information
4. Behavioral metrics: asymmetry, polarization, conformity, coalitions
5. Perturbations and composites: top-node removal, leadership, fragility

All functions are pure. Complexity is O(n^2) to O(n^3) in the group size,
which is fine for groups of up to 50 members, so the whole result is simply
recomputed whenever the input changes.

Usage:
    from social_topology import Participant, Ballot, analyze

    result = analyze(participants, ballots)
    if result is not None:
        print(result.borda_ranking, result.condorcet_winner)
"""

import copy
import hashlib
import json
import logging
import math
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from itertools import combinations
from typing import Optional

import networkx as nx
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# Sentinel returned by get_rank when a ballot does not rank the target
NOT_RANKED = -1

# A "strong tie" is a placement within the top third of a ballot
TOP_FRACTION = 3

MARGINALIZED_FRACTION = 0.1
MARGINALIZED_MAX_VARIANCE = 1.5

LINEAR_MAX_CYCLE_DENSITY = 0.1
LINEAR_MIN_GINI = 0.3
FRAGMENTED_MIN_CYCLE_DENSITY = 0.3

COMMUNITY_MAX_PASSES = 20
EIGENVECTOR_ITERATIONS = 100

MI_MIN_BINS = 2
MI_MAX_BINS = 5

# Below this a standard deviation is treated as zero
STD_FLOOR = 1e-12


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class Participant:
    """A group member. The id is opaque and never changes."""
    id: str
    name: str


@dataclass(frozen=True)
class Ballot:
    """
    One voter's ranking of the other members.

    ranking[0] is the most preferred participant (rank 1). The ranking may
    be partial; missing members are simply not ranked.
    """
    voter_id: str
    ranking: tuple[str, ...]
    _positions: dict[str, int] = field(
        init=False, repr=False, compare=False, hash=False
    )

    def __post_init__(self):
        object.__setattr__(self, "ranking", tuple(self.ranking))
        positions = {}
        for index, target_id in enumerate(self.ranking):
            positions.setdefault(target_id, index + 1)
        object.__setattr__(self, "_positions", positions)


@dataclass(frozen=True)
class AnalyticsResult:
    """Snapshot of every metric derived from one (participants, ballots) input."""
    # Social choice
    borda_scores: dict[str, int]
    borda_ranking: list[str]
    gini_coefficient: float
    lorenz_points: list[tuple[float, float]]
    condorcet_winner: Optional[str]
    condorcet_cycles: list[list[str]]
    kendall_w: float
    pairwise_matrix: list[list[int]]

    # Graph theory
    in_degree_centrality: dict[str, float]
    reciprocity_index: float
    reciprocal_pairs: list[tuple[str, str]]
    cycle_density: float

    # Network science
    k_core_decomposition: dict[str, int]
    betweenness_centrality: dict[str, float]
    communities: dict[str, int]

    # Sociology
    stratification_label: str
    marginalized_participants: list[str]
    popularity_gini: float

    # Psychology
    asymmetry_matrix: list[list[int]]
    polarization_scores: dict[str, float]
    spearman_conformity: dict[str, float]

    # Game theory
    is_tournament_acyclic: bool
    coalitions: list[list[str]]
    eigenvector_centrality: dict[str, float]

    # Information theory
    global_entropy: float
    individual_entropy: dict[str, float]
    mutual_information: list[list[float]]

    # Behavioral economics
    reciprocity_imbalance: dict[str, float]
    loss_aversion_count: dict[str, int]
    top_node_removal_borda_shift: dict[str, int]

    # Small group dynamics
    leadership_score: dict[str, float]
    subgroup_cohesion: dict[int, float]
    structural_fragility: float

    def to_dict(self) -> dict:
        """
        Convert to plain data (lists, str-keyed dicts and primitives).

        The output can be passed straight to json.dumps.
        """
        data = asdict(self)
        data["lorenz_points"] = [list(point) for point in self.lorenz_points]
        data["reciprocal_pairs"] = [list(pair) for pair in self.reciprocal_pairs]
        data["subgroup_cohesion"] = {
            str(community): cohesion
            for community, cohesion in self.subgroup_cohesion.items()
        }
        return data


# =============================================================================
# Helpers
# =============================================================================

def get_rank(ballot: Ballot, target_id: str) -> int:
    """
    Return the 1-based rank the ballot gives to target_id.

    Every function that reads a ballot goes through here.

    Returns:
        Rank (1 = most preferred), or NOT_RANKED if the ballot omits the target
    """
    return ballot._positions.get(target_id, NOT_RANKED)


def participant_ids(participants: list[Participant]) -> list[str]:
    return [p.id for p in participants]


def ballots_by_voter(ballots: list[Ballot]) -> dict[str, Ballot]:
    """Map each voter to their first ballot."""
    by_voter = {}
    for ballot in ballots:
        by_voter.setdefault(ballot.voter_id, ballot)
    return by_voter


def top_third_cutoff(n: int) -> int:
    """Lowest rank that still counts as a top-third placement among n - 1 others."""
    return math.ceil((n - 1) / TOP_FRACTION)


def _population_variance(values: list[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


# =============================================================================
# Social Choice
# =============================================================================

def build_pairwise_matrix(
    ballots: list[Ballot],
    participants: list[Participant]
) -> np.ndarray:
    """
    Build the pairwise preference matrix.

    Entry (i, j) counts the ballots that rank participant i above
    participant j. A ballot that omits either of the two contributes to
    neither cell, so matrix[i, j] + matrix[j, i] <= len(ballots).

    Args:
        ballots: Submitted ballots
        participants: Participants in their canonical order

    Returns:
        Read-only (n, n) integer array indexed by participant position
    """
    ids = participant_ids(participants)
    n = len(ids)
    matrix = np.zeros((n, n), dtype=np.int64)

    for ballot in ballots:
        ranks = [get_rank(ballot, pid) for pid in ids]
        for i, rank_i in enumerate(ranks):
            if rank_i == NOT_RANKED:
                continue
            for j, rank_j in enumerate(ranks):
                if rank_j != NOT_RANKED and rank_i < rank_j:
                    matrix[i, j] += 1

    matrix.flags.writeable = False
    return matrix


def pairwise_frame(
    matrix: np.ndarray,
    participants: list[Participant]
) -> pd.DataFrame:
    """Label the pairwise matrix with participant names (rows prefer over columns)."""
    names = [p.name for p in participants]
    return pd.DataFrame(matrix, index=names, columns=names)


def majority_relation(matrix: np.ndarray) -> np.ndarray:
    """
    Boolean matrix where entry (i, j) is True iff i beats j.

    i beats j when a strict majority of the ballots ranking both of them
    prefer i, i.e. the pairwise margin is strictly positive. Ties never
    count as wins.
    """
    return matrix > matrix.T


def build_majority_graph(
    matrix: np.ndarray,
    participants: list[Participant]
) -> nx.DiGraph:
    """
    Build the directed majority graph.

    An edge from A to B means A beats B. Nodes are participant ids,
    inserted in participant order. Edge attribute 'support' is the number
    of ballots preferring A over B.
    """
    ids = participant_ids(participants)
    beats = majority_relation(matrix)

    g = nx.DiGraph()
    g.add_nodes_from(ids)
    for i, j in zip(*np.nonzero(beats)):
        g.add_edge(ids[i], ids[j], support=int(matrix[i, j]))
    return g


def compute_borda_scores(
    ballots: list[Ballot],
    participants: list[Participant]
) -> dict[str, int]:
    """
    Compute Borda scores.

    Each ballot gives a ranked participant n - rank points, so with n
    members the first place is worth n - 1. Participants who never voted
    still collect points from other ballots.

    Returns:
        Dictionary of participant id -> score, in participant order
    """
    n = len(participants)
    scores = {p.id: 0 for p in participants}

    for ballot in ballots:
        for p in participants:
            if p.id == ballot.voter_id:
                continue
            rank = get_rank(ballot, p.id)
            if rank != NOT_RANKED:
                scores[p.id] += n - rank
    return scores


def borda_order(borda_scores: dict[str, float]) -> list[str]:
    """Participant ids by descending score; equal scores keep their input order."""
    return sorted(borda_scores, key=lambda pid: -borda_scores[pid])


def compute_received_ranks(
    ballots: list[Ballot],
    participants: list[Participant]
) -> dict[str, list[int]]:
    """Ranks each participant received, in ballot order."""
    received = {p.id: [] for p in participants}

    for ballot in ballots:
        for p in participants:
            if p.id == ballot.voter_id:
                continue
            rank = get_rank(ballot, p.id)
            if rank != NOT_RANKED:
                received[p.id].append(rank)
    return received


def detect_condorcet_winner(
    matrix: np.ndarray,
    participants: list[Participant]
) -> Optional[str]:
    """
    Find the participant who beats every other participant head to head.

    Returns:
        The winner's id, or None when there is none (the usual outcome
        under cyclic preferences)
    """
    beats = majority_relation(matrix)
    n = len(participants)

    for i in range(n):
        if all(beats[i, j] for j in range(n) if j != i):
            return participants[i].id
    return None


def find_condorcet_cycles(
    matrix: np.ndarray,
    participants: list[Participant]
) -> list[list[str]]:
    """
    Find all 3-cycles in the majority graph.

    Each unordered triple is checked in both rotational directions, so a
    cyclic triple is reported exactly once as [a, b, c] meaning
    a beats b, b beats c and c beats a. Longer cycles are not searched.

    Returns:
        List of [a, b, c] id triples
    """
    ids = participant_ids(participants)
    beats = majority_relation(matrix)
    cycles = []

    for a, b, c in combinations(range(len(ids)), 3):
        if beats[a, b] and beats[b, c] and beats[c, a]:
            cycles.append([ids[a], ids[b], ids[c]])
        elif beats[a, c] and beats[c, b] and beats[b, a]:
            cycles.append([ids[a], ids[c], ids[b]])
    return cycles


def compute_kendall_w(
    ballots: list[Ballot],
    participants: list[Participant]
) -> float:
    """
    Compute Kendall's W (coefficient of concordance).

    W = 12 S / (m^2 (n^3 - n)), where S is the sum of squared deviations of
    the rank sums from their mean. 1 means complete agreement, 0 none.
    The value is clamped to [0, 1].
    """
    n = len(participants)
    m = len(ballots)
    if m < 2 or n < 2:
        return 0.0

    rank_sums = []
    for p in participants:
        total = 0
        for ballot in ballots:
            rank = get_rank(ballot, p.id)
            if rank != NOT_RANKED:
                total += rank
        rank_sums.append(total)

    mean_rank_sum = m * (n + 1) / 2
    s = sum((r - mean_rank_sum) ** 2 for r in rank_sums)
    w = 12 * s / (m * m * (n ** 3 - n))
    return max(0.0, min(1.0, w))


# =============================================================================
# Graph Theory and Network Science
# =============================================================================

def build_weight_matrix(
    ballots: list[Ballot],
    participants: list[Participant]
) -> np.ndarray:
    """
    Build the per-voter preference strength matrix.

    Entry (i, j) adds n - rank for every time voter i ranked j. Ballots from
    voters outside the group are ignored here.
    """
    ids = participant_ids(participants)
    index = {pid: i for i, pid in enumerate(ids)}
    n = len(ids)
    matrix = np.zeros((n, n), dtype=np.int64)

    for ballot in ballots:
        voter = index.get(ballot.voter_id)
        if voter is None:
            continue
        for j, pid in enumerate(ids):
            if pid == ballot.voter_id:
                continue
            rank = get_rank(ballot, pid)
            if rank != NOT_RANKED:
                matrix[voter, j] += n - rank

    matrix.flags.writeable = False
    return matrix


def compute_in_degree_centrality(
    weight_matrix: np.ndarray,
    participants: list[Participant]
) -> dict[str, float]:
    """Weighted in-degree, scaled so that the most chosen participant scores 1.0."""
    in_degree = weight_matrix.sum(axis=0)
    peak = max(int(in_degree.max()) if in_degree.size else 0, 1)
    return {
        p.id: float(in_degree[i]) / peak
        for i, p in enumerate(participants)
    }


def compute_reciprocity_index(
    ballots: list[Ballot],
    participants: list[Participant]
) -> tuple[float, list[tuple[str, str]]]:
    """
    Compute the reciprocity index.

    A dyad is reciprocal when both members placed each other within the
    top third of their ballots. The index is the share of reciprocal
    dyads among all n (n - 1) / 2 dyads.

    Returns:
        Tuple of (index, reciprocal_pairs)
    """
    ids = participant_ids(participants)
    n = len(ids)
    cutoff = top_third_cutoff(n)
    by_voter = ballots_by_voter(ballots)
    pairs = []

    for i, j in combinations(range(n), 2):
        ballot_i = by_voter.get(ids[i])
        ballot_j = by_voter.get(ids[j])
        if ballot_i is None or ballot_j is None:
            continue
        rank_i_of_j = get_rank(ballot_i, ids[j])
        rank_j_of_i = get_rank(ballot_j, ids[i])
        if 0 < rank_i_of_j <= cutoff and 0 < rank_j_of_i <= cutoff:
            pairs.append((ids[i], ids[j]))

    total_dyads = n * (n - 1) // 2
    index = len(pairs) / total_dyads if total_dyads > 0 else 0.0
    return index, pairs


def compute_cycle_density(matrix: np.ndarray) -> float:
    """Share of all triads that form a 3-cycle in the majority graph."""
    n = matrix.shape[0]
    total_triads = n * (n - 1) * (n - 2) // 6
    if total_triads == 0:
        return 0.0

    beats = majority_relation(matrix)
    cyclic = 0
    for a, b, c in combinations(range(n), 3):
        if (beats[a, b] and beats[b, c] and beats[c, a]) or \
                (beats[a, c] and beats[c, b] and beats[b, a]):
            cyclic += 1
    return cyclic / total_triads


def build_strong_tie_graph(
    ballots: list[Ballot],
    participants: list[Participant]
) -> nx.Graph:
    """
    Undirected graph of strong ties.

    Two participants are linked when either one placed the other in the
    top third of their ballot.
    """
    ids = participant_ids(participants)
    cutoff = top_third_cutoff(len(ids))
    by_voter = ballots_by_voter(ballots)

    g = nx.Graph()
    g.add_nodes_from(ids)
    for pid in ids:
        ballot = by_voter.get(pid)
        if ballot is None:
            continue
        for other in ids:
            if other == pid:
                continue
            rank = get_rank(ballot, other)
            if 0 < rank <= cutoff:
                g.add_edge(pid, other)
    return g


def compute_k_core_decomposition(
    ballots: list[Ballot],
    participants: list[Participant]
) -> dict[str, int]:
    """
    Shell index of every participant in the strong-tie graph.

    This is the classic peeling: vertices with degree below k are stripped
    for k = 1, 2, ... and each vertex keeps the last k it survived.
    """
    g = build_strong_tie_graph(ballots, participants)
    core = nx.core_number(g)
    return {p.id: core[p.id] for p in participants}


def compute_betweenness_centrality(
    matrix: np.ndarray,
    participants: list[Participant]
) -> dict[str, float]:
    """
    Betweenness centrality on the unweighted majority graph.

    Uses Brandes' algorithm; values are normalized by (n - 1)(n - 2).
    High scores mark brokers sitting on majority-preference chains.
    """
    g = build_majority_graph(matrix, participants)
    if g.number_of_nodes() < 3:
        return {p.id: 0.0 for p in participants}

    betweenness = nx.betweenness_centrality(g, normalized=True)
    return {p.id: float(betweenness[p.id]) for p in participants}


def detect_communities(
    matrix: np.ndarray,
    participants: list[Participant],
    num_ballots: int
) -> dict[str, int]:
    """
    Greedy local-move community detection (a simplified Louvain pass).

    Every participant starts alone. In participant order, each one may move
    into the community of a participant it beats, picking the move with the
    largest gain of (weight to target community) - (weight to current
    community) over the symmetrized weights
    (m[i, j] + m[j, i]) / (2 * num_ballots). Passes repeat until nothing
    moves or COMMUNITY_MAX_PASSES is reached.

    The result depends on participant order, which is why that order is
    the only one used.

    Returns:
        Dictionary of participant id -> community label (0..k-1 in first-seen order)
    """
    ids = participant_ids(participants)
    n = len(ids)
    beats = majority_relation(matrix)
    scale = 2 * num_ballots or 1
    weights = (matrix + matrix.T) / scale
    np.fill_diagonal(weights, 0.0)

    community = list(range(n))
    improved = True
    passes = 0

    while improved and passes < COMMUNITY_MAX_PASSES:
        improved = False
        passes += 1
        for i in range(n):
            current = community[i]
            best_gain = 0.0
            best = current

            neighbor_communities = dict.fromkeys(
                community[j] for j in range(n) if j != i and beats[i, j]
            )
            for target in neighbor_communities:
                if target == current:
                    continue
                to_target = 0.0
                to_current = 0.0
                for j in range(n):
                    if j == i:
                        continue
                    if community[j] == target:
                        to_target += weights[i, j]
                    if community[j] == current:
                        to_current += weights[i, j]
                gain = to_target - to_current
                if gain > best_gain:
                    best_gain = gain
                    best = target

            if best != current:
                community[i] = best
                improved = True

    logger.debug("Community detection stopped after %d passes", passes)

    labels = {}
    result = {}
    for i, pid in enumerate(ids):
        labels.setdefault(community[i], len(labels))
        result[pid] = labels[community[i]]
    return result


# =============================================================================
# Inequality and Information
# =============================================================================

def compute_gini(values: list[float]) -> float:
    """
    Gini coefficient of non-negative values.

    0 means perfect equality; a single holder of everything gives (n - 1) / n.
    Empty or all-zero input gives 0.
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    n = len(ordered)
    total = sum(ordered)
    if total == 0:
        return 0.0
    weighted = sum((2 * (i + 1) - n - 1) * x for i, x in enumerate(ordered))
    return weighted / (n * total)


def compute_lorenz_points(values: list[float]) -> list[tuple[float, float]]:
    """
    Lorenz curve as (population share, value share) points starting at (0, 0).

    With a zero total the curve is the equality diagonal.
    """
    if not values:
        return [(0.0, 0.0)]
    ordered = sorted(values)
    n = len(ordered)
    total = sum(ordered)
    if total == 0:
        return [(i / n, i / n) for i in range(n + 1)]

    points = [(0.0, 0.0)]
    cumulative = 0
    for i, x in enumerate(ordered):
        cumulative += x
        points.append(((i + 1) / n, cumulative / total))
    return points


def determine_stratification_label(
    cycle_density: float,
    gini: float,
    communities: dict[str, int]
) -> str:
    """
    Classify the group structure.

    Rules, first match wins:
    - few cycles and unequal scores: "Linear Hierarchy"
    - several communities, at most half as many as members: "Tiered Clusters"
    - many cycles or more communities than half the members: "Fragmented"
    - otherwise: "Mixed Structure"
    """
    num_communities = len(set(communities.values()))
    size = len(communities)

    if cycle_density < LINEAR_MAX_CYCLE_DENSITY and gini > LINEAR_MIN_GINI:
        return "Linear Hierarchy"
    if 1 < num_communities <= size / 2:
        return "Tiered Clusters"
    if cycle_density > FRAGMENTED_MIN_CYCLE_DENSITY or num_communities > size / 2:
        return "Fragmented"
    return "Mixed Structure"


def detect_marginalized(
    borda_scores: dict[str, float],
    received_ranks: dict[str, list[int]]
) -> list[str]:
    """
    Participants consistently ranked low.

    Takes the bottom 10% of Borda scores (at least one participant) and
    keeps those whose received ranks barely vary. Low scorers with high
    variance are divisive rather than marginalized and are left out.
    """
    lowest_first = sorted(borda_scores, key=lambda pid: borda_scores[pid])
    cutoff = max(1, math.ceil(len(lowest_first) * MARGINALIZED_FRACTION))

    marginalized = []
    for pid in lowest_first[:cutoff]:
        ranks = received_ranks.get(pid, [])
        if len(ranks) < 2 or _population_variance(ranks) < MARGINALIZED_MAX_VARIANCE:
            marginalized.append(pid)
    return marginalized


def compute_entropy(values: list[float]) -> float:
    """Shannon entropy in bits of values normalized to a distribution."""
    total = sum(values)
    if total <= 0:
        return 0.0
    entropy = 0.0
    for v in values:
        p = v / total
        if p > 0:
            entropy -= p * math.log2(p)
    return entropy


def compute_individual_entropy(
    received_ranks: dict[str, list[int]],
    n: int
) -> dict[str, float]:
    """Entropy of the histogram of ranks 1..n-1 each participant received."""
    result = {}
    for pid, ranks in received_ranks.items():
        histogram = [0] * max(n, 1)
        for r in ranks:
            if 1 <= r < n:
                histogram[r - 1] += 1
        result[pid] = compute_entropy(histogram)
    return result


def compute_mutual_information_matrix(
    ballots: list[Ballot],
    participants: list[Participant]
) -> list[list[float]]:
    """
    Mutual information between every pair of ballots.

    Each ballot's ranks are binned into clamp(n - 1, 2, 5) equal-width bins
    and a joint histogram is built over the participants both ballots
    ranked. MI = sum p(x, y) log2(p(x, y) / (p(x) p(y))). The diagonal is
    log2(bins) by convention.

    The binning is a heuristic; other bin counts change the values
    materially.

    Returns:
        m x m symmetric matrix (m = number of ballots)
    """
    ids = participant_ids(participants)
    n = len(ids)
    m = len(ballots)
    bins = max(MI_MIN_BINS, min(n - 1, MI_MAX_BINS))
    span = max(n - 1, 1)

    # 0 marks "no rank" (own id or unranked)
    rank_rows = []
    bin_rows = []
    for ballot in ballots:
        ranks = []
        for pid in ids:
            rank = 0 if pid == ballot.voter_id else get_rank(ballot, pid)
            ranks.append(max(rank, 0))
        rank_rows.append(ranks)
        bin_rows.append([
            min(bins - 1, (r - 1) * bins // span) if r > 0 else 0
            for r in ranks
        ])

    mi = [[0.0] * m for _ in range(m)]
    diagonal = math.log2(bins)

    for a in range(m):
        mi[a][a] = diagonal
        for b in range(a + 1, m):
            joint = {}
            count_a = [0] * bins
            count_b = [0] * bins
            valid = 0

            for j in range(n):
                if rank_rows[a][j] == 0 or rank_rows[b][j] == 0:
                    continue
                key = (bin_rows[a][j], bin_rows[b][j])
                joint[key] = joint.get(key, 0) + 1
                count_a[key[0]] += 1
                count_b[key[1]] += 1
                valid += 1

            if valid == 0:
                continue

            value = 0.0
            for (x, y), count in joint.items():
                p_xy = count / valid
                p_x = count_a[x] / valid
                p_y = count_b[y] / valid
                value += p_xy * math.log2(p_xy / (p_x * p_y))

            mi[a][b] = mi[b][a] = max(0.0, value)
    return mi


# =============================================================================
# Psychology and Behavior
# =============================================================================

def compute_asymmetry_matrix(
    ballots: list[Ballot],
    participants: list[Participant]
) -> list[list[int]]:
    """
    |rank(i -> j) - rank(j -> i)| for every pair that ranked each other.

    Pairs without mutual data are 0.
    """
    ids = participant_ids(participants)
    n = len(ids)
    by_voter = ballots_by_voter(ballots)
    matrix = [[0] * n for _ in range(n)]

    for i in range(n):
        ballot_i = by_voter.get(ids[i])
        if ballot_i is None:
            continue
        for j in range(n):
            if i == j:
                continue
            ballot_j = by_voter.get(ids[j])
            if ballot_j is None:
                continue
            rank_i_of_j = get_rank(ballot_i, ids[j])
            rank_j_of_i = get_rank(ballot_j, ids[i])
            if rank_i_of_j > 0 and rank_j_of_i > 0:
                matrix[i][j] = abs(rank_i_of_j - rank_j_of_i)
    return matrix


def compute_polarization_scores(
    received_ranks: dict[str, list[int]]
) -> dict[str, float]:
    """Variance of the ranks each participant received (0 with fewer than two)."""
    return {
        pid: _population_variance(ranks) if len(ranks) >= 2 else 0.0
        for pid, ranks in received_ranks.items()
    }


def compute_spearman_conformity(
    ballots: list[Ballot],
    participants: list[Participant],
    borda_scores: dict[str, float]
) -> dict[str, float]:
    """
    Spearman correlation of each ballot with the group ranking.

    The group ranking is the descending Borda order. Only ids present in
    both rankings are compared; fewer than two give 0.

    Returns:
        Dictionary of voter id -> rho in [-1, 1]
    """
    group_order = sorted(
        participant_ids(participants),
        key=lambda pid: -borda_scores.get(pid, 0)
    )
    group_rank = {pid: i + 1 for i, pid in enumerate(group_order)}

    result = {}
    for ballot in ballots:
        if len(ballot.ranking) < 2:
            result[ballot.voter_id] = 0.0
            continue

        sum_d_squared = 0
        count = 0
        for pid in ballot.ranking:
            if pid not in group_rank:
                continue
            d = get_rank(ballot, pid) - group_rank[pid]
            sum_d_squared += d * d
            count += 1

        if count > 1:
            rho = 1 - 6 * sum_d_squared / (count * (count * count - 1))
        else:
            rho = 0.0
        result[ballot.voter_id] = max(-1.0, min(1.0, rho))
    return result


def compute_reciprocity_imbalance(
    ballots: list[Ballot],
    participants: list[Participant]
) -> dict[str, float]:
    """
    Average of (rank given - rank received) against every mutual voter.

    Positive values mark generous givers, negative values net receivers of
    favor. Participants without mutual data score 0.
    """
    by_voter = ballots_by_voter(ballots)
    result = {}

    for voter in participants:
        voter_ballot = by_voter.get(voter.id)
        total = 0
        count = 0
        if voter_ballot is not None:
            for other in participants:
                if other.id == voter.id:
                    continue
                other_ballot = by_voter.get(other.id)
                if other_ballot is None:
                    continue
                given = get_rank(voter_ballot, other.id)
                received = get_rank(other_ballot, voter.id)
                if given > 0 and received > 0:
                    total += given - received
                    count += 1
        result[voter.id] = total / count if count > 0 else 0.0
    return result


def compute_loss_aversion_proxy(
    asymmetry_matrix: list[list[int]],
    participants: list[Participant]
) -> dict[str, int]:
    """Count of asymmetries above ceil(n / 3) per participant."""
    n = len(participants)
    threshold = math.ceil(n / 3)
    return {
        p.id: sum(
            1 for j in range(n)
            if j != i and asymmetry_matrix[i][j] > threshold
        )
        for i, p in enumerate(participants)
    }


def compute_eigenvector_centrality(
    matrix: np.ndarray,
    participants: list[Participant]
) -> dict[str, float]:
    """
    Eigenvector centrality of the pairwise matrix by power iteration.

    The matrix is scaled by its largest entry and iterated on in-edges
    for a fixed EIGENVECTOR_ITERATIONS steps, L2-normalizing each step.
    """
    n = len(participants)
    if n == 0:
        return {}
    peak = max(int(matrix.max()), 1)
    weights = matrix / peak
    ev = np.full(n, 1.0 / n)

    for _ in range(EIGENVECTOR_ITERATIONS):
        nxt = weights.T @ ev
        norm = float(np.sqrt(np.sum(nxt * nxt))) or 1.0
        ev = nxt / norm

    return {p.id: abs(float(ev[i])) for i, p in enumerate(participants)}


def detect_coalitions(
    ballots: list[Ballot],
    participants: list[Participant]
) -> list[list[str]]:
    """
    Greedy clique cover of the reciprocal top-third graph.

    Starting from each unvisited participant (in participant order), the
    clique grows by neighbors that are reciprocally tied to every current
    member. Only cliques of two or more are reported. This is an
    approximation and depends on participant order.
    """
    _, pairs = compute_reciprocity_index(ballots, participants)
    neighbors = {p.id: [] for p in participants}
    for a, b in pairs:
        neighbors[a].append(b)
        neighbors[b].append(a)
    position = {pid: i for i, pid in enumerate(neighbors)}

    coalitions = []
    visited = set()
    for start, adjacent in neighbors.items():
        if start in visited or not adjacent:
            continue
        coalition = [start]
        visited.add(start)
        for candidate in sorted(adjacent, key=position.__getitem__):
            if candidate in visited:
                continue
            if all(member in neighbors[candidate] for member in coalition):
                coalition.append(candidate)
                visited.add(candidate)
        if len(coalition) >= 2:
            coalitions.append(coalition)
    return coalitions


# =============================================================================
# Perturbations and Composite Scores
# =============================================================================

def simulate_top_node_removal(
    ballots: list[Ballot],
    participants: list[Participant],
    borda_scores: dict[str, int]
) -> dict[str, int]:
    """
    Borda shift of every remaining participant when the top scorer leaves.

    The top scorer's ballot and every mention of them are dropped and
    Borda scores recomputed on the reduced group.

    Returns:
        Dictionary of participant id -> new score - old score (empty for n <= 2)
    """
    if len(participants) <= 2 or not borda_scores:
        return {}

    top_id = borda_order(borda_scores)[0]
    remaining = [p for p in participants if p.id != top_id]
    reduced_ballots = [
        Ballot(b.voter_id, tuple(pid for pid in b.ranking if pid != top_id))
        for b in ballots
        if b.voter_id != top_id
    ]

    new_scores = compute_borda_scores(reduced_ballots, remaining)
    return {
        p.id: new_scores.get(p.id, 0) - borda_scores.get(p.id, 0)
        for p in remaining
    }


def _z_scores(values: dict[str, float]) -> dict[str, float]:
    if not values:
        return {}
    mean = sum(values.values()) / len(values)
    std = math.sqrt(_population_variance(list(values.values())))
    if std < STD_FLOOR:
        std = 1.0
    return {k: (v - mean) / std for k, v in values.items()}


def compute_leadership_score(
    borda_scores: dict[str, float],
    betweenness: dict[str, float],
    in_degree: dict[str, float],
    participants: list[Participant]
) -> dict[str, float]:
    """Mean of the z-scored Borda, betweenness and in-degree signals."""
    z_borda = _z_scores(borda_scores)
    z_between = _z_scores(betweenness)
    z_degree = _z_scores(in_degree)
    return {
        p.id: (z_borda.get(p.id, 0.0)
               + z_between.get(p.id, 0.0)
               + z_degree.get(p.id, 0.0)) / 3
        for p in participants
    }


def compute_subgroup_cohesion(
    communities: dict[str, int],
    ballots: list[Ballot],
    participants: list[Participant]
) -> dict[int, float]:
    """
    Mean in-community preference per community.

    A rank r among n members is worth 1 - (r - 1) / (n - 1), so 1 is the
    top spot. Single-member communities score 1; communities whose members
    never ranked each other score 0.
    """
    n = len(participants)
    by_voter = ballots_by_voter(ballots)
    groups = {}
    for pid, community in communities.items():
        groups.setdefault(community, []).append(pid)

    result = {}
    for community in sorted(groups):
        members = groups[community]
        if len(members) < 2:
            result[community] = 1.0
            continue

        total = 0.0
        count = 0
        for member in members:
            ballot = by_voter.get(member)
            if ballot is None:
                continue
            for other in members:
                if other == member:
                    continue
                rank = get_rank(ballot, other)
                if rank > 0:
                    total += 1 - (rank - 1) / max(n - 1, 1)
                    count += 1
        result[community] = total / count if count > 0 else 0.0
    return result


def compute_structural_fragility(
    matrix: np.ndarray,
    participants: list[Participant]
) -> float:
    """
    Average reachability loss when a single participant is removed.

    For each removal, the majority graph is searched from the first
    surviving participant and the unreachable share of the n - 1 survivors
    is recorded. High values mean a few members hold the structure together.
    """
    n = len(participants)
    if n < 3:
        return 0.0

    g = build_majority_graph(matrix, participants)
    ids = participant_ids(participants)
    total_loss = 0.0

    for removed in ids:
        survivors = [pid for pid in ids if pid != removed]
        reduced = g.subgraph(survivors)
        reachable = 1 + len(nx.descendants(reduced, survivors[0]))
        total_loss += 1 - reachable / (n - 1)
    return total_loss / n


# =============================================================================
# Composition
# =============================================================================

def analyze(
    participants: list[Participant],
    ballots: list[Ballot]
) -> Optional[AnalyticsResult]:
    """
    Compute every metric for one input.

    Args:
        participants: Group members in their canonical order
        ballots: Submitted ballots

    Returns:
        AnalyticsResult, or None when there are fewer than two participants
        or no ballots
    """
    participants = list(participants)
    ballots = list(ballots)
    if len(participants) < 2 or not ballots:
        logger.debug(
            "No analysis for %d participants and %d ballots",
            len(participants), len(ballots)
        )
        return None

    n = len(participants)
    m = len(ballots)
    logger.debug("Analyzing %d participants and %d ballots", n, m)

    # Social choice
    pairwise = build_pairwise_matrix(ballots, participants)
    borda_scores = compute_borda_scores(ballots, participants)
    borda_ranking = borda_order(borda_scores)
    received_ranks = compute_received_ranks(ballots, participants)
    condorcet_winner = detect_condorcet_winner(pairwise, participants)
    condorcet_cycles = find_condorcet_cycles(pairwise, participants)
    kendall_w = compute_kendall_w(ballots, participants)
    score_values = list(borda_scores.values())
    lorenz_points = compute_lorenz_points(score_values)
    gini = compute_gini(score_values)

    # Graph theory
    weight_matrix = build_weight_matrix(ballots, participants)
    in_degree = compute_in_degree_centrality(weight_matrix, participants)
    reciprocity_index, reciprocal_pairs = compute_reciprocity_index(ballots, participants)
    cycle_density = compute_cycle_density(pairwise)

    # Network science
    k_cores = compute_k_core_decomposition(ballots, participants)
    betweenness = compute_betweenness_centrality(pairwise, participants)
    communities = detect_communities(pairwise, participants, m)

    # Sociology
    label = determine_stratification_label(cycle_density, gini, communities)
    marginalized = detect_marginalized(borda_scores, received_ranks)

    # Psychology
    asymmetry = compute_asymmetry_matrix(ballots, participants)
    polarization = compute_polarization_scores(received_ranks)
    conformity = compute_spearman_conformity(ballots, participants, borda_scores)

    # Game theory
    coalitions = detect_coalitions(ballots, participants)
    eigenvector = compute_eigenvector_centrality(pairwise, participants)

    # Information theory
    global_entropy = compute_entropy(score_values)
    individual_entropy = compute_individual_entropy(received_ranks, n)
    mutual_information = compute_mutual_information_matrix(ballots, participants)

    # Behavioral economics
    imbalance = compute_reciprocity_imbalance(ballots, participants)
    loss_aversion = compute_loss_aversion_proxy(asymmetry, participants)
    removal_shift = simulate_top_node_removal(ballots, participants, borda_scores)

    # Small group dynamics
    leadership = compute_leadership_score(borda_scores, betweenness, in_degree, participants)
    cohesion = compute_subgroup_cohesion(communities, ballots, participants)
    fragility = compute_structural_fragility(pairwise, participants)

    return AnalyticsResult(
        borda_scores=borda_scores,
        borda_ranking=borda_ranking,
        gini_coefficient=gini,
        lorenz_points=lorenz_points,
        condorcet_winner=condorcet_winner,
        condorcet_cycles=condorcet_cycles,
        kendall_w=kendall_w,
        pairwise_matrix=pairwise.tolist(),
        in_degree_centrality=in_degree,
        reciprocity_index=reciprocity_index,
        reciprocal_pairs=reciprocal_pairs,
        cycle_density=cycle_density,
        k_core_decomposition=k_cores,
        betweenness_centrality=betweenness,
        communities=communities,
        stratification_label=label,
        marginalized_participants=marginalized,
        popularity_gini=gini,
        asymmetry_matrix=asymmetry,
        polarization_scores=polarization,
        spearman_conformity=conformity,
        is_tournament_acyclic=not condorcet_cycles,
        coalitions=coalitions,
        eigenvector_centrality=eigenvector,
        global_entropy=global_entropy,
        individual_entropy=individual_entropy,
        mutual_information=mutual_information,
        reciprocity_imbalance=imbalance,
        loss_aversion_count=loss_aversion,
        top_node_removal_borda_shift=removal_shift,
        leadership_score=leadership,
        subgroup_cohesion=cohesion,
        structural_fragility=fragility,
    )


# =============================================================================
# Caching
# =============================================================================

def content_key(
    participants: list[Participant],
    ballots: list[Ballot]
) -> str:
    """
    SHA-256 of the serialized input.

    Order is part of the key because ordered heuristics (communities,
    coalitions) depend on it.
    """
    payload = {
        "participants": [[p.id, p.name] for p in participants],
        "ballots": [[b.voter_id, list(b.ranking)] for b in ballots],
    }
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class AnalyticsCache:
    """
    Content-addressed memo of analyze().

    Entries are keyed by content_key, so equal inputs share a result no
    matter which objects carry them. Each caller gets its own deep copy,
    so edits to a returned result never reach the stored entry. The least
    recently used entry is evicted once maxsize is exceeded.
    """

    def __init__(self, maxsize: int = 32):
        self.maxsize = maxsize
        self.hits = 0
        self.misses = 0
        self._entries: OrderedDict[str, Optional[AnalyticsResult]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(
        self,
        participants: list[Participant],
        ballots: list[Ballot]
    ) -> Optional[AnalyticsResult]:
        key = content_key(participants, ballots)
        if key in self._entries:
            self.hits += 1
            self._entries.move_to_end(key)
            logger.debug("Analytics cache hit %s", key[:12])
            return copy.deepcopy(self._entries[key])

        self.misses += 1
        logger.debug("Analytics cache miss %s", key[:12])
        result = analyze(participants, ballots)
        self._entries[key] = copy.deepcopy(result)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)
        return result

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
