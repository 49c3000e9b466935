# Seed data: Complaints
#
# Coverage matrix:
#   Statuses   : PENDING, IN_PROGRESS, RESOLVED (one re-opened)
#   Categories : Electricity, Water, Roads, Waste, General
#   Severities : LOW, MEDIUM, HIGH, CRITICAL
#   Special    : explicit category/severity overrides, comments,
#                upvotes, a review on a resolved complaint

from datetime import timedelta

from tracker import (
    ComplaintStatus, LocationInput,
    triage, calculate_sla_deadline, build_location, status_transition_update,
)
from .config import new_id, now_utc

# ---------------------------------------------------------------------------
# Complaint records
# ---------------------------------------------------------------------------
COMPLAINTS = [
    {"title": "Huge pothole on MG Road causing accidents",
     "description": "There is a massive pothole right in the middle of MG Road near the metro station. Two bikers fell yesterday.",
     "severity": "HIGH", "status": "IN_PROGRESS", "citizen_key": "rahul", "age_hours": 30,
     "location": {"longitude": 77.5946, "latitude": 12.9716, "address": "MG Road, Bengaluru"},
     "upvoters": ["priya"],
     "comments": [("roads", "Crew scheduled for resurfacing tomorrow morning.")]},

    {"title": "Water pipe burst flooding the street",
     "description": "Main water supply line burst this morning. Entire street is flooded and water pressure is zero in our homes.",
     "status": "PENDING", "citizen_key": "priya", "age_hours": 2,
     "location": {"longitude": 77.2090, "latitude": 28.6139, "address": "Connaught Place, New Delhi"},
     "upvoters": ["rahul", "priya"]},

    {"title": "Streetlights not working for a week",
     "description": "The streetlights from sector 4 to sector 5 are completely dead. It is very unsafe at night.",
     "category": "Electricity", "severity": "MEDIUM", "status": "PENDING", "citizen_key": "rahul", "age_hours": 20,
     "location": {"longitude": 72.8777, "latitude": 19.0760, "address": "Andheri West, Mumbai"}},

    {"title": "Garbage dump overflowing near park",
     "description": "The community bin has not been cleared for 4 days. Strong foul smell reaching the children play area.",
     "status": "RESOLVED", "citizen_key": "priya", "age_hours": 96,
     "location": {"longitude": 80.2707, "latitude": 13.0827, "address": "T Nagar, Chennai"},
     "comments": [("waste", "Bin cleared and area sanitised."), ("priya", "Thank you, it is clean now.")],
     "review": {"rating": 4, "feedback": "Quick response once reported."}},

    {"title": "Sparking transformer on the corner",
     "description": "The transformer near the school keeps sparking after the rain. Immediate danger to children.",
     "status": "RESOLVED", "citizen_key": "rahul", "age_hours": 50,
     "location": {"longitude": 78.4867, "latitude": 17.3850, "address": "Banjara Hills, Hyderabad"}},

    {"title": "Small litter near bus stop",
     "description": "Some litter and wrappers around the bus stop bench.",
     "status": "PENDING", "citizen_key": "priya", "age_hours": 5,
     "location": {"longitude": 73.8567, "latitude": 18.5204, "address": "FC Road, Pune"}},

    {"title": "Drain blocked outside market",
     "description": "The drain outside the vegetable market is blocked and water is overflowing onto the road.",
     "status": "IN_PROGRESS", "citizen_key": "rahul", "age_hours": 12,
     "location": {"longitude": 88.3639, "latitude": 22.5726, "address": "New Market, Kolkata"}},

    {"title": "Noise from construction at night",
     "description": "A builder keeps working past midnight every day this week.",
     "status": "PENDING", "citizen_key": "priya", "age_hours": 1},

    {"title": "Cracked sidewalk tiles",
     "description": "Several sidewalk tiles are cracked outside the library and people trip on them.",
     "status": "RESOLVED", "reopen": True, "citizen_key": "rahul", "age_hours": 120,
     "location": {"longitude": 76.2673, "latitude": 9.9312, "address": "MG Road, Kochi"}},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_complaints(db, user_ids: dict[str, str], people: dict[str, dict]) -> list[dict]:
    """Triage and insert all seed complaints. Returns the inserted docs."""
    print("\n  Importing complaints...")
    now = now_utc()
    inserted: list[dict] = []

    for i, c in enumerate(COMPLAINTS):
        result = triage(c["title"], c["description"], c.get("category"), c.get("severity"))
        created = now - timedelta(hours=c["age_hours"])
        location = LocationInput(**c["location"]) if c.get("location") else None

        doc = {
            "_id": new_id(),
            "citizen_id": user_ids[c["citizen_key"]],
            "title": c["title"],
            "description": c["description"],
            "category": result.category,
            "severity": result.severity.value,
            "status": ComplaintStatus.PENDING.value,
            "department_assigned": result.department_assigned,
            "sla_deadline": calculate_sla_deadline(result.severity, created),
            "resolved_at": None,
            "location": build_location(location),
            "evidence": [],
            "upvotes": [user_ids[k] for k in c.get("upvoters", [])],
            "comments": [],
            "review": None,
            "created_at": created,
            "updated_at": created,
        }

        # Walk the lifecycle the same way an official would
        target = ComplaintStatus(c["status"])
        if target != ComplaintStatus.PENDING:
            moved = created + timedelta(hours=c["age_hours"] / 2)
            doc.update(status_transition_update(doc, target, moved))
            doc["updated_at"] = moved
        if c.get("reopen"):
            doc.update(status_transition_update(doc, ComplaintStatus.IN_PROGRESS, now))
            doc["updated_at"] = now

        for n, (author_key, text) in enumerate(c.get("comments", [])):
            author = people.get(author_key)
            doc["comments"].append({
                "id": new_id(),
                "text": text,
                "user_id": user_ids[author_key],
                "name": author["name"] if author else "Unknown",
                "role": author["role"] if author else "citizen",
                "created_at": created + timedelta(hours=1 + n),
            })

        if c.get("review") and doc["status"] == ComplaintStatus.RESOLVED.value:
            doc["review"] = {**c["review"], "created_at": doc["updated_at"]}

        db.complaints.insert_one(doc)
        inserted.append(doc)

        tag = {"RESOLVED": "OK", "IN_PROGRESS": "WIP", "PENDING": "NEW"}.get(doc["status"], "")
        print(f"    [{i+1:2d}/{len(COMPLAINTS)}] {tag:3s}  {doc['category']:11s} {doc['severity']:8s}  {c['title'][:44]}...")

    print(f"  => {len(COMPLAINTS)} complaints imported")
    return inserted
