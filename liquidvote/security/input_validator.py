# liquidvote/security/input_validator.py

import re
import bleach
from datetime import datetime, timedelta, timezone

# Input validation and sanitization for profile, proposal and voting payloads


class ValidationFailed(ValueError):
    def __init__(self, details):
        super().__init__("Validation failed: " + "; ".join(details))
        self.details = list(details)


class InputValidator:
    TITLE_LENGTH = (10, 100)
    DESCRIPTION_LENGTH = (50, 1000)
    OPTION_LENGTH = (3, 200)
    OPTION_COUNT = (2, 10)
    NAME_MAX_LENGTH = 50
    MIN_VOTING_PERIOD = timedelta(hours=1)

    def __init__(self):
        self.patterns = {
            'wallet_address': re.compile(r'^0x[a-fA-F0-9]{40}$'),
            'unique_id': re.compile(r'^[a-zA-Z0-9_]{1,16}$'),
            'organization_id': re.compile(r'^[a-zA-Z0-9_-]{1,64}$'),
            'xss_script': re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL),
            'xss_event': re.compile(r'\bon\w+\s*=', re.IGNORECASE),
        }

    def sanitize_string(self, input_str, max_length=255):
        if not isinstance(input_str, str):
            raise ValueError("Input must be a string")
        if len(input_str) > max_length:
            input_str = input_str[:max_length]

        sanitized = re.sub(self.patterns['xss_script'], '', input_str)
        sanitized = re.sub(self.patterns['xss_event'], '', sanitized)
        # plain text only: every tag is stripped
        sanitized = bleach.clean(sanitized, tags=set(), attributes={}, strip=True)
        return sanitized.strip()

    def validate_wallet_address(self, address):
        return isinstance(address, str) and bool(self.patterns['wallet_address'].match(address))

    def normalize_wallet_address(self, address):
        if not self.validate_wallet_address(address):
            raise ValueError("Invalid wallet address format")
        return address.lower()

    def validate_unique_id(self, unique_id):
        return isinstance(unique_id, str) and bool(self.patterns['unique_id'].match(unique_id))

    def validate_organization_id(self, organization_id):
        return isinstance(organization_id, str) and bool(self.patterns['organization_id'].match(organization_id))

    def parse_deadline(self, value):
        """ISO 8601 string to a naive UTC datetime."""
        if not isinstance(value, str):
            raise ValueError("Invalid voting deadline format")
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            deadline = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError("Invalid voting deadline format")
        if deadline.tzinfo is not None:
            deadline = deadline.astimezone(timezone.utc).replace(tzinfo=None)
        return deadline

    def validate_profile_data(self, data, partial=False):
        if not isinstance(data, dict):
            raise ValidationFailed(["Profile data must be an object"])
        errors = []
        cleaned = {}

        if 'unique_id' in data or not partial:
            unique_id = data.get('unique_id')
            if not self.validate_unique_id(unique_id):
                errors.append("Invalid unique_id format. Use only letters, numbers, and underscores (max 16 characters)")
            else:
                cleaned['unique_id'] = unique_id.lower()

        for field in ('first_name', 'last_name'):
            if field not in data and partial:
                continue
            value = data.get(field)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{field} is required")
                continue
            value = self.sanitize_string(value, max_length=self.NAME_MAX_LENGTH)
            if not value:
                errors.append(f"{field} is required")
            else:
                cleaned[field] = value

        if data.get('organization_id'):
            if not self.validate_organization_id(data['organization_id']):
                errors.append("Invalid organization_id format")
            else:
                cleaned['organization_id'] = data['organization_id'].lower()
        elif 'organization_id' in data:
            cleaned['organization_id'] = None

        if errors:
            raise ValidationFailed(errors)
        return cleaned

    def validate_proposal_data(self, data, now=None):
        if not isinstance(data, dict):
            raise ValidationFailed(["Proposal data must be an object"])
        errors = []
        cleaned = {}
        now = now or datetime.utcnow()

        title = data.get('title')
        if not isinstance(title, str) or not title.strip():
            errors.append("Title is required")
        else:
            title = self.sanitize_string(title, max_length=1000)
            low, high = self.TITLE_LENGTH
            if len(title) < low:
                errors.append(f"Title must be at least {low} characters")
            elif len(title) > high:
                errors.append(f"Title must be less than {high} characters")
            cleaned['title'] = title

        description = data.get('description')
        if not isinstance(description, str) or not description.strip():
            errors.append("Description is required")
        else:
            description = self.sanitize_string(description, max_length=5000)
            low, high = self.DESCRIPTION_LENGTH
            if len(description) < low:
                errors.append(f"Description must be at least {low} characters")
            elif len(description) > high:
                errors.append(f"Description must be less than {high} characters")
            cleaned['description'] = description

        if not data.get('voting_deadline'):
            errors.append("Voting deadline is required")
        else:
            try:
                deadline = self.parse_deadline(data['voting_deadline'])
                if deadline <= now + self.MIN_VOTING_PERIOD:
                    errors.append("Voting deadline must be at least 1 hour from now")
                cleaned['voting_deadline'] = deadline
            except ValueError as e:
                errors.append(str(e))

        options = data.get('options')
        if not isinstance(options, list):
            errors.append("Voting options are required")
        else:
            errors.extend(self._option_errors(options))
            cleaned['options'] = [
                self.sanitize_string(o, max_length=self.OPTION_LENGTH[1])
                for o in options
                if isinstance(o, str) and len(o.strip()) >= self.OPTION_LENGTH[0]
            ]

        if errors:
            raise ValidationFailed(errors)
        return cleaned

    def _option_errors(self, options):
        errors = []
        low, high = self.OPTION_LENGTH
        valid = [o.strip() for o in options if isinstance(o, str) and len(o.strip()) >= low]
        min_count, max_count = self.OPTION_COUNT
        if len(valid) < min_count:
            errors.append(f"At least {min_count} voting options are required")
        elif len(valid) > max_count:
            errors.append(f"Maximum {max_count} voting options allowed")
        for index, option in enumerate(options, start=1):
            if not isinstance(option, str):
                continue
            trimmed = option.strip()
            if 0 < len(trimmed) < low:
                errors.append(f"Option {index} must be at least {low} characters")
            elif len(trimmed) > high:
                errors.append(f"Option {index} must be less than {high} characters")
        if len({o.lower() for o in valid}) != len(valid):
            errors.append("Voting options must be unique")
        return errors

    def validate_option_number(self, value, option_count):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("Option must be an integer")
        if not 1 <= value <= option_count:
            raise ValueError(f"Option must be between 1 and {option_count}")
        return value
