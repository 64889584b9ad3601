# liquidvote/create_admin.py
# Seeds an organization and an admin profile for a wallet address.
#   python -m liquidvote.create_admin <wallet> <unique_id> <org_id> "<org name>"

import sys

from liquidvote import db, app
from liquidvote.database.models import Organization, User
from liquidvote.security.input_validator import InputValidator

if __name__ == "__main__":
    if len(sys.argv) != 5:
        print("usage: python -m liquidvote.create_admin <wallet> <unique_id> <org_id> <org_name>")
        sys.exit(1)
    wallet, unique_id, org_id, org_name = sys.argv[1:]
    validator = InputValidator()
    wallet = validator.normalize_wallet_address(wallet)
    if not validator.validate_unique_id(unique_id) or not validator.validate_organization_id(org_id):
        print("Invalid unique_id or organization id")
        sys.exit(1)

    with app.app_context():
        db.create_all()
        org = db.session.get(Organization, org_id.lower())
        if org is None:
            org = Organization(organization_id=org_id.lower(), organization_name=org_name)
            db.session.add(org)
        user = db.session.get(User, wallet)
        if user is None:
            user = User(wallet_address=wallet, unique_id=unique_id.lower(),
                        first_name="Admin", last_name=org_name[:50], organization_id=org.organization_id)
            db.session.add(user)
        user.role = "admin"
        db.session.commit()
        print(f"Organization: {org.organization_id} ({org.organization_name})")
        print(f"Admin wallet: {user.wallet_address} as {user.unique_id}")
