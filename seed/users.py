# Seed data: Users (citizens, one official per department, a supervisor)

from .config import new_id, now_utc, hash_password

# ---------------------------------------------------------------------------
# Raw user definitions
# ---------------------------------------------------------------------------
# Official departments match the category names the intake classifier assigns
USERS = [
    # ---- Citizens ----
    {"key": "rahul", "name": "Rahul Sharma", "email": "rahul@example.com",
     "password": "password123", "phone": "9876543210", "role": "citizen", "department": None},

    {"key": "priya", "name": "Priya Patel", "email": "priya@example.com",
     "password": "password123", "phone": "9876543211", "role": "citizen", "department": None},

    # ---- Officials ----
    {"key": "roads", "name": "Amit Singh", "email": "amit.roads@gov.in",
     "password": "official123", "phone": "9000000001", "role": "official", "department": "Roads"},

    {"key": "water", "name": "Sneha Gupta", "email": "sneha.water@gov.in",
     "password": "official123", "phone": "9000000002", "role": "official", "department": "Water"},

    {"key": "electricity", "name": "Vikram Rao", "email": "vikram.power@gov.in",
     "password": "official123", "phone": "9000000003", "role": "official", "department": "Electricity"},

    {"key": "waste", "name": "Meera Iyer", "email": "meera.waste@gov.in",
     "password": "official123", "phone": "9000000004", "role": "official", "department": "Waste"},

    {"key": "supervisor", "name": "Kavita Menon", "email": "kavita.supervisor@gov.in",
     "password": "official123", "phone": "9000000005", "role": "official", "department": "All"},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_users(db) -> dict[str, str]:
    """Insert seed users into MongoDB. Returns {key: _id} mapping."""
    print("\n  Importing seed users...")
    user_ids: dict[str, str] = {}
    for u in USERS:
        uid = new_id()
        db.users.insert_one({
            "_id": uid,
            "name": u["name"],
            "email": u["email"],
            "phone": u["phone"],
            "hashed_password": hash_password(u["password"]),
            "role": u["role"],
            "department": u["department"],
            "created_at": now_utc(),
        })
        user_ids[u["key"]] = uid
        print(f"    {u['email']:28s}  ({u['role']}, {u['department'] or '-'})")
    print(f"  => {len(USERS)} users created")
    return user_ids
