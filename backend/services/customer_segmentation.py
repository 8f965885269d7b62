"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Customer Segmentation                                           ║
║                                                                              ║
║  Three algorithms over per-company aggregates:                               ║
║  - kmeans:     min-max normalised features, numpy Lloyd iterations           ║
║  - rfm:        recency / frequency / monetary scores (1-5) + segment rules   ║
║  - behavioral: rule-based segments on size, relationship and activity        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np

from config import parse_iso
from services.opportunity_scoring import relationship_from_activity_count

logger = logging.getLogger("segmentation")

CONVERGENCE_THRESHOLD = 0.001

KMEANS_FEATURE_IMPORTANCE = {"revenue": 0.35, "frequency": 0.25, "recency": 0.25, "deal_size": 0.15}
RFM_FEATURE_IMPORTANCE = {"recency": 0.4, "frequency": 0.35, "monetary": 0.25}
BEHAVIORAL_FEATURE_IMPORTANCE = {
    "company_size": 0.3, "deal_count": 0.25, "relationship_strength": 0.25, "recency": 0.2,
}

COMPANY_SIZES = ["SMALL", "MEDIUM", "LARGE", "ENTERPRISE"]


@dataclass
class Customer:
    id: str
    name: str
    email: str = ""
    total_revenue: float = 0.0
    deal_count: int = 0
    avg_deal_size: float = 0.0
    last_activity: Optional[str] = None
    days_since_last_activity: float = 0.0
    relationship_strength: str = "WEAK"
    industry: str = ""
    region: str = ""
    company_size: str = "SMALL"

    def to_dict(self) -> dict:
        return asdict(self)


# ==================== SHARED HELPERS ====================

def segment_metrics(customers: List[Customer]) -> dict:
    n = len(customers)
    if not n:
        return {"avg_revenue": 0, "avg_deal_size": 0, "total_customers": 0, "avg_recency": 0, "avg_frequency": 0}
    return {
        "avg_revenue": sum(c.total_revenue for c in customers) / n,
        "avg_deal_size": sum(c.avg_deal_size for c in customers) / n,
        "total_customers": n,
        "avg_recency": sum(c.days_since_last_activity for c in customers) / n,
        "avg_frequency": sum(c.deal_count for c in customers) / n,
    }


def _segment(seg_id: str, name: str, description: str, customers: List[Customer],
             centroid: List[float], characteristics: List[str]) -> dict:
    return {
        "id": seg_id,
        "name": name,
        "description": description,
        "customers": [c.to_dict() for c in customers],
        "centroid": centroid,
        "metrics": segment_metrics(customers),
        "characteristics": characteristics,
    }


def _result(segments: list, algorithm: str, silhouette: float, variance: float, importance: dict) -> dict:
    return {
        "segments": segments,
        "algorithm": algorithm,
        "silhouette_score": silhouette,
        "explained_variance": variance,
        "feature_importance": importance,
    }


# ════════════════════════════════════════════════════════════════════════
# K-MEANS
# ════════════════════════════════════════════════════════════════════════

def customer_features(customers: List[Customer]) -> np.ndarray:
    return np.array([
        [c.total_revenue, c.deal_count, c.days_since_last_activity, c.avg_deal_size]
        for c in customers
    ], dtype=float)


def normalize_features(data: np.ndarray) -> np.ndarray:
    """Min-max per feature; a constant feature keeps range 1"""
    mins = data.min(axis=0)
    ranges = data.max(axis=0) - mins
    ranges[ranges == 0] = 1
    return (data - mins) / ranges


def assign_clusters(data: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    distances = np.linalg.norm(data[:, None, :] - centroids[None, :, :], axis=2)
    return distances.argmin(axis=1)


def update_centroids(data: np.ndarray, labels: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    new_centroids = centroids.copy()
    for i in range(len(centroids)):
        members = data[labels == i]
        # Empty cluster keeps its previous centroid
        if len(members):
            new_centroids[i] = members.mean(axis=0)
    return new_centroids


def silhouette_score(data: np.ndarray, labels: np.ndarray) -> float:
    """Mean silhouette; singletons score 0, fewer than 2 clusters -> 0"""
    clusters = [c for c in np.unique(labels)]
    if len(clusters) < 2:
        return 0.0

    distances = np.linalg.norm(data[:, None, :] - data[None, :, :], axis=2)
    scores = []
    for idx in range(len(data)):
        own = labels[idx]
        same = labels == own
        if same.sum() <= 1:
            scores.append(0.0)
            continue
        a = distances[idx, same].sum() / (same.sum() - 1)
        b = min(distances[idx, labels == other].mean() for other in clusters if other != own)
        denom = max(a, b)
        scores.append((b - a) / denom if denom > 0 else 0.0)
    return float(np.mean(scores))


def explained_variance(data: np.ndarray, labels: np.ndarray, centroids: np.ndarray) -> float:
    """1 - WCSS / TSS"""
    tss = float(((data - data.mean(axis=0)) ** 2).sum())
    if tss == 0:
        return 0.0
    wcss = float(((data - centroids[labels]) ** 2).sum())
    return 1 - wcss / tss


def cluster_characteristics(customers: List[Customer]) -> List[str]:
    metrics = segment_metrics(customers)
    characteristics = []

    if metrics["avg_revenue"] > 500_000:
        characteristics.append("High revenue customers")
    elif metrics["avg_revenue"] > 100_000:
        characteristics.append("Medium revenue customers")
    else:
        characteristics.append("Low revenue customers")

    if metrics["avg_frequency"] > 10:
        characteristics.append("High frequency buyers")
    elif metrics["avg_frequency"] > 3:
        characteristics.append("Regular buyers")
    else:
        characteristics.append("Occasional buyers")

    if metrics["avg_recency"] < 30:
        characteristics.append("Recently active")
    elif metrics["avg_recency"] < 90:
        characteristics.append("Moderately recent activity")
    else:
        characteristics.append("Long time no activity")

    return characteristics


def perform_kmeans_segmentation(
    customers: List[Customer],
    k: int = 4,
    max_iterations: int = 100,
    seed: Optional[int] = None
) -> dict:
    if k < 1:
        raise ValueError("Number of clusters must be at least 1")
    if len(customers) < k:
        raise ValueError("Not enough customers for the requested number of clusters")

    data = normalize_features(customer_features(customers))
    rng = np.random.default_rng(seed)
    centroids = data[rng.choice(len(data), size=k, replace=False)]

    for iteration in range(max_iterations):
        labels = assign_clusters(data, centroids)
        new_centroids = update_centroids(data, labels, centroids)
        shift = np.linalg.norm(new_centroids - centroids, axis=1)
        centroids = new_centroids
        if (shift <= CONVERGENCE_THRESHOLD).all():
            logger.info(f"[KMEANS] converged after {iteration + 1} iterations (k={k}, n={len(customers)})")
            break
    labels = assign_clusters(data, centroids)

    segments = []
    for i in range(k):
        members = [customers[idx] for idx in np.flatnonzero(labels == i)]
        segments.append(_segment(
            f"kmeans_{i}",
            f"Cluster {i + 1}",
            f"Customer segment {i + 1} identified by K-means clustering",
            members,
            [float(v) for v in centroids[i]],
            cluster_characteristics(members) if members else [],
        ))

    return _result(
        segments,
        "kmeans",
        silhouette_score(data, labels),
        explained_variance(data, labels, centroids),
        dict(KMEANS_FEATURE_IMPORTANCE),
    )


# ════════════════════════════════════════════════════════════════════════
# RFM
# ════════════════════════════════════════════════════════════════════════

RFM_SEGMENTS = [
    # name, (r_min, r_max), (f_min, f_max), (m_min, m_max)
    ("Champions", (4, 5), (4, 5), (4, 5)),
    ("Loyal Customers", (3, 5), (3, 5), (3, 5)),
    ("Potential Loyalists", (3, 5), (1, 3), (1, 3)),
    ("New Customers", (4, 5), (1, 1), (1, 1)),
    ("Promising", (3, 4), (1, 1), (1, 1)),
    ("Need Attention", (2, 3), (2, 3), (2, 3)),
    ("About to Sleep", (2, 3), (1, 2), (1, 2)),
    ("At Risk", (1, 2), (2, 5), (2, 5)),
    ("Can't Lose Them", (1, 2), (4, 5), (4, 5)),
    ("Hibernating", (1, 2), (1, 2), (1, 2)),
    ("Lost", (1, 2), (1, 2), (1, 2)),
]

RFM_DESCRIPTIONS = {
    "Champions": "Your best customers who buy frequently and recently",
    "Loyal Customers": "Customers who buy regularly from your store",
    "Potential Loyalists": "Recent customers with average frequency",
    "New Customers": "Customers who made their first purchase recently",
    "Promising": "Recent customers who haven't bought much yet",
    "Need Attention": "Customers who have above average recency, frequency, and monetary values",
    "About to Sleep": "Customers who bought a while ago but with above average frequency and monetary values",
    "At Risk": "Customers who bought a long time ago but with above average frequency and monetary values",
    "Can't Lose Them": "Your most loyal customers who bought recently and frequently",
    "Hibernating": "Customers who bought a long time ago and with low frequency and monetary values",
    "Lost": "Customers who bought a long time ago with low frequency and monetary values",
}

RFM_CHARACTERISTICS = {
    "Champions": ["High recency", "High frequency", "High monetary value", "Recent purchases"],
    "Loyal Customers": ["Regular buyers", "Consistent engagement", "Medium to high value"],
    "New Customers": ["Very recent purchases", "Low frequency", "First-time buyers"],
    "At Risk": ["High past value", "Low recent activity", "Need re-engagement"],
    "Lost": ["Long time no activity", "Low engagement", "May need different approach"],
}


def recency_score(days: float) -> int:
    if days <= 7:
        return 5
    if days <= 14:
        return 4
    if days <= 30:
        return 3
    if days <= 90:
        return 2
    return 1


def frequency_score(deal_count: int) -> int:
    if deal_count >= 20:
        return 5
    if deal_count >= 10:
        return 4
    if deal_count >= 5:
        return 3
    if deal_count >= 2:
        return 2
    return 1


def monetary_score(revenue: float) -> int:
    if revenue >= 1_000_000:
        return 5
    if revenue >= 500_000:
        return 4
    if revenue >= 100_000:
        return 3
    if revenue >= 50_000:
        return 2
    return 1


def rfm_scores(customer: Customer) -> Dict[str, int]:
    return {
        "recency": recency_score(customer.days_since_last_activity),
        "frequency": frequency_score(customer.deal_count),
        "monetary": monetary_score(customer.total_revenue),
    }


def perform_rfm_segmentation(customers: List[Customer]) -> dict:
    """A customer can fall into several overlapping segments"""
    scored = [(c, rfm_scores(c)) for c in customers]

    segments = []
    for index, (name, r_range, f_range, m_range) in enumerate(RFM_SEGMENTS):
        members = [
            c for c, s in scored
            if r_range[0] <= s["recency"] <= r_range[1]
            and f_range[0] <= s["frequency"] <= f_range[1]
            and m_range[0] <= s["monetary"] <= m_range[1]
        ]
        if members:
            segments.append(_segment(
                f"rfm_{index}",
                name,
                RFM_DESCRIPTIONS.get(name, "Customer segment"),
                members,
                [0, 0, 0, 0],
                RFM_CHARACTERISTICS.get(name, ["Standard customer characteristics"]),
            ))

    return _result(segments, "rfm", 0.8, 0.9, dict(RFM_FEATURE_IMPORTANCE))


# ════════════════════════════════════════════════════════════════════════
# BEHAVIORAL
# ════════════════════════════════════════════════════════════════════════

BEHAVIORAL_SEGMENTS = [
    (
        "High-Value Enterprise",
        lambda c: c.company_size == "ENTERPRISE" and c.total_revenue > 500_000
        and c.relationship_strength == "EXCELLENT",
        "Large enterprise customers with high revenue and strong relationships",
        ["Enterprise size", "High revenue", "Strong relationship", "Strategic importance"],
    ),
    (
        "Growing Mid-Market",
        lambda c: c.company_size == "LARGE" and c.deal_count > 5 and c.days_since_last_activity < 30,
        "Medium-sized companies showing growth potential",
        ["Medium size", "Increasing deal frequency", "Recent activity", "Growth potential"],
    ),
    (
        "Small Business Loyalists",
        lambda c: c.company_size == "SMALL" and c.deal_count >= 3 and c.relationship_strength != "WEAK",
        "Small businesses with consistent engagement",
        ["Small size", "Consistent purchases", "Loyal behavior", "Stable revenue"],
    ),
    (
        "New Prospects",
        lambda c: c.deal_count <= 2 and c.days_since_last_activity < 90,
        "Recently acquired customers with growth potential",
        ["Recent acquisition", "Low purchase history", "Growth opportunity", "Needs nurturing"],
    ),
    (
        "At-Risk Customers",
        lambda c: c.days_since_last_activity > 90 and c.relationship_strength == "WEAK",
        "Customers showing signs of disengagement",
        ["Long inactive", "Weak relationship", "Potential churn risk", "Needs attention"],
    ),
]


def perform_behavioral_segmentation(customers: List[Customer]) -> dict:
    segments = []
    for index, (name, rule, description, characteristics) in enumerate(BEHAVIORAL_SEGMENTS):
        members = [c for c in customers if rule(c)]
        if members:
            segments.append(_segment(
                f"behavioral_{index}", name, description, members, [0, 0, 0, 0], characteristics
            ))
    return _result(segments, "behavioral", 0.75, 0.85, dict(BEHAVIORAL_FEATURE_IMPORTANCE))


# ════════════════════════════════════════════════════════════════════════
# CUSTOMER AGGREGATION (from stored documents)
# ════════════════════════════════════════════════════════════════════════

def build_customers(
    companies: List[dict],
    opportunities: List[dict],
    activities: List[dict],
    now: datetime = None
) -> List[Customer]:
    """One Customer per company, aggregated from won opportunities and activity recency"""
    current = now or datetime.now(timezone.utc)
    customers = []

    for company in companies:
        cid = company["id"]
        won = [o for o in opportunities if o.get("company_id") == cid and o.get("stage") == "CLOSED_WON"]
        company_activities = [a for a in activities if a.get("company_id") == cid]

        revenue = sum(o.get("deal_size") or 0 for o in won)
        timestamps = [parse_iso(o.get("updated_at")) for o in opportunities if o.get("company_id") == cid]
        timestamps += [parse_iso(a.get("created_at")) for a in company_activities]
        timestamps = [t for t in timestamps if t]
        last = max(timestamps) if timestamps else parse_iso(company.get("created_at"))
        days_since = (current - last).days if last else 365

        size = (company.get("size") or "SMALL").upper()
        customers.append(Customer(
            id=cid,
            name=company.get("name", ""),
            email=company.get("email") or "",
            total_revenue=revenue,
            deal_count=len(won),
            avg_deal_size=revenue / len(won) if won else 0.0,
            last_activity=last.isoformat() if last else None,
            days_since_last_activity=max(0, days_since),
            relationship_strength=relationship_from_activity_count(len(company_activities)),
            industry=company.get("industry") or "",
            region=company.get("region") or "",
            company_size=size if size in COMPANY_SIZES else "SMALL",
        ))

    return customers
