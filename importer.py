# Civic Grievance Tracker: Seed Data Importer
# Resets MongoDB and populates it with demo users and complaints
#
# Usage:  python importer.py

from pymongo import MongoClient

from seed.config import MONGODB_URL, MONGODB_DB
from seed.users import import_users, USERS
from seed.complaints import import_complaints, COMPLAINTS
from tracker import ensure_indexes


def main():
    print("=" * 64)
    print("  Civic Grievance Tracker: Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/4] Connecting to MongoDB...")
    mongo_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = mongo_client[MONGODB_DB]
    print(f"  Connected: {MONGODB_URL} / {MONGODB_DB}")

    # ------------------------------------------------------------------
    # 2. Reset collections
    # ------------------------------------------------------------------
    print("\n[2/4] Resetting collections...")
    for coll_name in ["complaints", "users", "notifications"]:
        db[coll_name].drop()
    ensure_indexes(db)
    print("  MongoDB: complaints, users, notifications (indexes rebuilt)")

    # ------------------------------------------------------------------
    # 3. Seed users
    # ------------------------------------------------------------------
    print("\n[3/4] Users")
    user_ids = import_users(db)
    people = {u["key"]: u for u in USERS}

    # ------------------------------------------------------------------
    # 4. Seed complaints
    # ------------------------------------------------------------------
    print("\n[4/4] Complaints")
    import_complaints(db, user_ids, people)

    mongo_client.close()

    print("\n" + "=" * 64)
    print("  IMPORT COMPLETE")
    print("=" * 64)
    print(f"  Users:       {len(USERS)}")
    print(f"  Complaints:  {len(COMPLAINTS)}")
    print()
    print("  Test credentials:")
    print("    Citizen    : rahul@example.com          / password123")
    print("    Official   : amit.roads@gov.in          / official123  (Roads)")
    print("    Supervisor : kavita.supervisor@gov.in   / official123  (All)")
    print("=" * 64)


if __name__ == "__main__":
    main()
