"""Constants shared across entitystore modules."""

from __future__ import annotations

USER_AGENT = "entitystore/1 (+aiohttp)"

DEFAULT_API_PREFIX = "/api/v1"

# Seconds before an HTTP request is abandoned and reported as a connectivity failure.
DEFAULT_REQUEST_TIMEOUT: float = 8.0

# Seconds after the last successful list before a store counts as stale.
DEFAULT_STALE_AFTER: float = 10 * 60

LOCAL_SNAPSHOT_VERSION = 1

# HTTP statuses that mean "the service could not be reached", not "the service said no".
CONNECTIVITY_STATUSES: frozenset[int] = frozenset({408, 502, 503, 504})
VALIDATION_STATUSES: frozenset[int] = frozenset({400, 422})

# Dashboard resource keys whose endpoint path differs from the key itself.
# Keys not listed here use the key verbatim as the path segment.
DEFAULT_RESOURCE_PATHS: dict[str, str] = {
    "teamMembers": "team-members",
    "subServices": "sub-services",
    "servicePages": "service-pages",
    "competitorBacklinks": "competitor-backlinks",
    "urlErrors": "url-errors",
    "onPageSeoAudits": "on-page-seo-audits",
    "toxicUrls": "toxic-backlinks",
    "uxIssues": "ux-issues",
    "qc": "qc-runs",
    "promotionItems": "promotion-items",
    "effortTargets": "effort-targets",
    "goldStandards": "gold-standards",
    "industrySectors": "industry-sectors",
    "contentTypes": "content-types",
    "assetTypes": "asset-types",
    "assetCategories": "asset-categories",
    "asset-format-master": "asset-formats",
    "seoErrors": "seo-errors",
    "workflowStages": "workflow-stages",
    "qcChecklists": "qc-checklists",
    "qcVersions": "qc-versions",
    "qcWeightageConfigs": "qc-weightage-configs",
    "workload": "hr/workload",
    "rewards": "hr/rewards",
    "evaluations": "ai/evaluations",
    "dashboardMetrics": "analytics/dashboard-metrics",
    "employeeRankings": "hr/rankings",
    "traffic": "analytics/traffic",
    "emails": "communication/emails",
    "voiceProfiles": "communication/voice-profiles",
    "callLogs": "communication/calls",
    "articles": "knowledge/articles",
    "complianceRules": "compliance/rules",
    "complianceAudits": "compliance/audits",
}
