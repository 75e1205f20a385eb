# scripts/init_rbac.py
import os

import dotenv

from auth.auth_manager import auth_manager
from auth.models import init_database

dotenv.load_dotenv()

# 1) Create tables and load the seed permissions + system roles
init_database(os.getenv("RBAC_SEED_FILE"))

# 2) Optional first admin account (ADMIN_EMAIL / ADMIN_PASSWORD)
email = os.getenv("ADMIN_EMAIL")
password = os.getenv("ADMIN_PASSWORD")
if email and password:
    result = auth_manager.register(email, password, full_name=os.getenv("ADMIN_NAME", "Administrator"), account_role="admin")
    if "error" in result:
        print(f"Admin account not created: {result['error']}")
    else:
        print(f"Admin account {email} created ({result['user_id']})")

print("RBAC database initialized")
