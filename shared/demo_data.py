from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from services.crm_store import DocumentStore
from services.pipeline_rules import DEFAULT_STAGES

DEMO_USER = "demo@example.com"

_CONTACTS = [
    ("Raj Sharma", "raj.sharma@example.com", "+91 9000000101", "TechCorp Solutions"),
    ("Priya Patel", "priya.patel@example.com", "+91 9000000202", "Digital Innovations"),
    ("Amit Kumar", "amit.kumar@example.com", "+44 7000000303", "Global Enterprises"),
    ("Sneha Singh", "sneha.singh@example.com", "+1 5550000404", "Smart Systems Inc"),
    ("Vikram Gupta", "vikram.gupta@example.com", "+91 9000000505", "Cloud Services Ltd"),
]

# name, contact index, stage, status, value, days ago
_OPPORTUNITIES = [
    ("Website Redesign Project", 0, "16", "Open", 120000, 2),
    ("Digital Marketing Campaign", 1, "20", "Open", 450000, 5),
    ("Mobile App Development", 2, "20.5", "Open", 1800000, 9),
    ("SEO Optimization Service", 3, "10", "Won", 90000, 12),
    ("Brand Identity Package", 4, "0", "Lost", 60000, 20),
    ("Cloud Migration", 0, "21", "Open", 2500000, 26),
    ("CRM Implementation", 1, "17", "Open", 300000, 40),
]


def utc_iso(days_offset: int = 0) -> str:
    dt = datetime.now(timezone.utc) + timedelta(days=days_offset)
    return dt.isoformat().replace("+00:00", "Z")


def _demo_tasks(name: str, index: int) -> List[Dict[str, Any]]:
    tasks = []
    for number in range(index % 3 + 1):
        tasks.append(
            {
                "id": f"demo-task-{index}-{number}",
                "title": f"Task {number + 1} for {name}",
                "description": "Demo task description",
                "isCompleted": number == 0 and index % 2 == 0,
                "dueDate": utc_iso(number + 1)[:10],
                "assignee": DEMO_USER,
                "createdBy": DEMO_USER,
                "assignedBy": DEMO_USER,
            }
        )
    return tasks


def seed_demo_data(store: DocumentStore) -> Dict[str, int]:
    """Populate an empty store with a small, deterministic CRM workspace."""
    contacts = []
    for index, (name, email, phone, company) in enumerate(_CONTACTS):
        contacts.append(
            store.create(
                "contacts",
                {
                    "id": f"demo-contact-{index}",
                    "name": name,
                    "email": email,
                    "phone": phone,
                    "companyName": company,
                    "owner": DEMO_USER,
                    "status": "Active",
                    "createdAt": utc_iso(-60 + index),
                },
            )
        )

    today = utc_iso()[:10]
    for index, (name, contact_index, stage, status, value, days_ago) in enumerate(_OPPORTUNITIES):
        contact = contacts[contact_index]
        store.create(
            "opportunities",
            {
                "id": f"demo-opp-{index}",
                "name": name,
                "value": float(value),
                "stage": stage,
                "status": status,
                "source": "Demo",
                "owner": DEMO_USER,
                "tags": ["Hot Lead"] if stage in {"20", "20.5", "21"} else ["Follow Up"],
                "contactId": contact["id"],
                "contactName": contact["name"],
                "contactEmail": contact["email"],
                "contactPhone": contact["phone"],
                "companyName": contact["companyName"],
                "followUpDate": today if index == 1 else None,
                "followUpRead": False,
                "tasks": _demo_tasks(name, index),
                "notes": [
                    {
                        "id": f"demo-note-{index}",
                        "content": f"Demo note: Important update about {name}",
                        "createdAt": utc_iso(-days_ago),
                    }
                ],
                "createdAt": utc_iso(-days_ago),
            },
        )

    for index, contact in enumerate(contacts[:3]):
        store.create(
            "appointments",
            {
                "id": f"demo-apt-{index}",
                "title": f"Meeting with {contact['name']}",
                "date": utc_iso(index)[:10],
                "time": f"{10 + index * 2:02d}:00",
                "assignedTo": DEMO_USER,
                "contactId": contact["id"],
                "notes": "Demo appointment",
            },
        )

    store.create("stages", {"id": "pipeline", "stages": [dict(stage) for stage in DEFAULT_STAGES]})
    return {
        "contacts": len(contacts),
        "opportunities": len(_OPPORTUNITIES),
        "appointments": 3,
    }
