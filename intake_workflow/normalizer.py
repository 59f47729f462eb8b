"""
Normalization of call-derived intake fields into athenahealth-ready values.

Voice transcription hands us loosely structured strings: spoken house numbers
("one twenty three"), free-text state names, phone numbers with punctuation or a
leading country code, dates in whatever form the caller used. Everything here is
a pure function so it can run at ingress, in a stage, or in tests unchanged.
"""
import re
from datetime import datetime
from typing import Dict, List, Optional

from dateutil import parser as dateutil_parser
from loguru import logger

from intake_workflow.exceptions import ValidationError

VERBAL_NUMBERS = {
    'zero': 0, 'oh': 0, 'one': 1, 'two': 2, 'three': 3, 'four': 4,
    'five': 5, 'six': 6, 'seven': 7, 'eight': 8, 'nine': 9,
    'ten': 10, 'eleven': 11, 'twelve': 12, 'thirteen': 13,
    'fourteen': 14, 'fifteen': 15, 'sixteen': 16, 'seventeen': 17,
    'eighteen': 18, 'nineteen': 19, 'twenty': 20,
    'thirty': 30, 'forty': 40, 'fifty': 50, 'sixty': 60,
    'seventy': 70, 'eighty': 80, 'ninety': 90,
    'hundred': 100, 'thousand': 1000
}

STATE_ABBREVIATIONS = {
    'alabama': 'AL', 'alaska': 'AK', 'arizona': 'AZ', 'arkansas': 'AR',
    'california': 'CA', 'colorado': 'CO', 'connecticut': 'CT', 'delaware': 'DE',
    'district of columbia': 'DC', 'florida': 'FL', 'georgia': 'GA', 'hawaii': 'HI',
    'idaho': 'ID', 'illinois': 'IL', 'indiana': 'IN', 'iowa': 'IA', 'kansas': 'KS',
    'kentucky': 'KY', 'louisiana': 'LA', 'maine': 'ME', 'maryland': 'MD',
    'massachusetts': 'MA', 'michigan': 'MI', 'minnesota': 'MN', 'mississippi': 'MS',
    'missouri': 'MO', 'montana': 'MT', 'nebraska': 'NE', 'nevada': 'NV',
    'new hampshire': 'NH', 'new jersey': 'NJ', 'new mexico': 'NM', 'new york': 'NY',
    'north carolina': 'NC', 'north dakota': 'ND', 'ohio': 'OH', 'oklahoma': 'OK',
    'oregon': 'OR', 'pennsylvania': 'PA', 'rhode island': 'RI', 'south carolina': 'SC',
    'south dakota': 'SD', 'tennessee': 'TN', 'texas': 'TX', 'utah': 'UT',
    'vermont': 'VT', 'virginia': 'VA', 'washington': 'WA', 'west virginia': 'WV',
    'wisconsin': 'WI', 'wyoming': 'WY'
}

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[a-z]{2,}$')
ORDINAL_PATTERN = re.compile(r'^(\d+)(st|nd|rd|th)$')
EXPLICIT_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d")


def convert_verbal_to_numeric(verbal_text: Optional[str]) -> str:
    """
    Convert a spoken number to digits.

    Examples:
        "42" → "42"
        "twenty three" → "23"
        "one two three" → "123"
        "one twenty three" → "123"
        "two thousand fifteen" → "2015"
        "4th" → "4"

    Text that is not a number is returned stripped but otherwise unchanged.
    """
    if not verbal_text:
        return ''

    original = str(verbal_text).strip()
    cleaned = original.lower()

    if cleaned.isdigit():
        return cleaned

    ordinal_match = ORDINAL_PATTERN.match(cleaned)
    if ordinal_match:
        return ordinal_match.group(1)

    tokens = [t for t in re.split(r'[\s\-,]+', cleaned) if t and t != 'and']
    if not tokens or any(t not in VERBAL_NUMBERS and not t.isdigit() for t in tokens):
        return original

    # Spoken house numbers are usually digit groups read one after another,
    # so anything that cannot extend the current group starts a new one.
    segments: List[str] = []
    total = 0
    current: Optional[int] = None

    def flush():
        nonlocal total, current
        if current is not None or total:
            segments.append(str(total + (current or 0)))
        total = 0
        current = None

    for token in tokens:
        if token.isdigit():
            flush()
            segments.append(token)
            continue

        value = VERBAL_NUMBERS[token]
        if token == 'hundred':
            current = (current or 1) * 100
        elif token == 'thousand':
            total += (current or 1) * 1000
            current = None
        elif current is None:
            current = value
        elif current >= 100 and current % 100 == 0 and value < 100:
            current += value
        elif current % 100 >= 20 and current % 10 == 0 and value < 10:
            current += value
        else:
            flush()
            current = value

    flush()
    return ''.join(segments)


def build_street_address(house_number: Optional[str], street: Optional[str]) -> str:
    numeric_house_number = convert_verbal_to_numeric(house_number)
    cleaned_street = str(street).strip().replace('"', '') if street else ''

    if numeric_house_number and cleaned_street:
        return f"{numeric_house_number} {cleaned_street}"
    return cleaned_street or numeric_house_number or ''


def parse_date(value: Optional[str]) -> Optional[str]:
    """
    Parse a date in ISO, US or month-name form to ISO (YYYY-MM-DD).

    Examples:
        "1990-01-15" → "1990-01-15"
        "01/15/1990" → "1990-01-15"
        "January 15th, 1990" → "1990-01-15"

    Returns None when the value is empty, unparseable, or missing a component
    (a bare "January 15" is rejected rather than guessed).
    """
    if not value or not str(value).strip():
        return None

    text = str(value).strip()

    for fmt in EXPLICIT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue

    try:
        # Parsing against two different defaults exposes components the caller never said
        first = dateutil_parser.parse(text, default=datetime(1904, 1, 1), fuzzy=True)
        second = dateutil_parser.parse(text, default=datetime(1908, 2, 2), fuzzy=True)
    except (ValueError, OverflowError, TypeError) as e:
        logger.debug(f"Could not parse date: {e}")
        return None

    if first.date() != second.date():
        return None
    return first.strftime("%Y-%m-%d")


def parse_time(value: Optional[str]) -> Optional[str]:
    """
    Parse natural language time to 24-hour format (HH:MM).

    Examples:
        "10:30 AM" → "10:30"
        "3:30 PM" → "15:30"
        "14:00" → "14:00"
    """
    if not value or not str(value).strip():
        return None

    text = str(value).strip()

    if len(text) == 5 and text[2] == ':':
        try:
            datetime.strptime(text, "%H:%M")
            return text
        except ValueError:
            pass

    try:
        return dateutil_parser.parse(text, fuzzy=True).strftime("%H:%M")
    except (ValueError, OverflowError, TypeError) as e:
        logger.debug(f"Could not parse time: {e}")
        return None


def format_date_for_athena(iso_date: Optional[str]) -> str:
    """ISO date → MM/DD/YYYY. Anything that is not a three-part ISO date passes through."""
    if not iso_date:
        return ''

    parts = iso_date.split('-')
    if len(parts) != 3:
        return iso_date

    return f"{parts[1]}/{parts[2]}/{parts[0]}"


def clean_phone(phone: Optional[str]) -> str:
    """Reduce to a 10-digit NANP number, or '' when the digits cannot be one."""
    if not phone:
        return ''

    cleaned = re.sub(r'\D', '', str(phone))

    if len(cleaned) == 11 and cleaned.startswith('1'):
        cleaned = cleaned[1:]

    # NANP: area code and exchange both start with 2-9
    if len(cleaned) == 10 and '2' <= cleaned[0] <= '9' and '2' <= cleaned[3] <= '9':
        return cleaned

    return ''


def normalize_sex(value: Optional[str]) -> str:
    cleaned = str(value or '').replace('"', '').strip().upper()
    if cleaned in ('MAN', 'M', 'MALE'):
        return 'M'
    if cleaned in ('WOMAN', 'F', 'FEMALE'):
        return 'F'
    return ''


def get_state_abbreviation(state_name: Optional[str]) -> str:
    if not state_name:
        return ''
    state_name = str(state_name).strip()
    if len(state_name) == 2:
        return state_name.upper()
    return STATE_ABBREVIATIONS.get(state_name.lower(), state_name)


def normalize_zip(value: Optional[str]) -> str:
    digits = re.sub(r'\D', '', convert_verbal_to_numeric(value))
    if len(digits) in (5, 9):
        return digits[:5]
    return ''


def normalize_email(value: Optional[str]) -> str:
    if not value:
        return ''
    # Transcription tends to insert spaces around the @ and dots
    cleaned = re.sub(r'\s+', '', str(value)).lower()
    return cleaned if EMAIL_PATTERN.match(cleaned) else ''


def validate_intake_minimum(first_name: Optional[str], last_name: Optional[str], date_of_birth: Optional[str]) -> List[str]:
    """Fields an intake record cannot be queued without."""
    errors = []
    if not first_name or not str(first_name).strip():
        errors.append("first_name is required")
    if not last_name or not str(last_name).strip():
        errors.append("last_name is required")
    if not parse_date(date_of_birth):
        errors.append("date_of_birth is missing or not a valid date")
    return errors


def prepare_patient_fields(payload: Dict, department_id: str) -> Dict[str, str]:
    """
    Build the form fields for athenahealth patient creation.

    Raises:
        ValidationError: name or birth date missing, or no contact method among
            email, phone and postal code.
    """
    first_name = str(payload.get('first_name') or '').strip()
    last_name = str(payload.get('last_name') or '').strip()
    dob = format_date_for_athena(parse_date(payload.get('date_of_birth')))

    errors = []
    if not first_name:
        errors.append("first_name is required")
    if not last_name:
        errors.append("last_name is required")
    if not dob:
        errors.append("date_of_birth is required")

    email = normalize_email(payload.get('email'))
    phone = clean_phone(payload.get('phone'))
    zip_code = normalize_zip(payload.get('zip'))
    if not (email or phone or zip_code):
        errors.append("At least one contact method (email, phone, or ZIP) is required")

    if errors:
        raise ValidationError("Missing required fields: " + "; ".join(errors), errors=errors)

    fields = {
        'firstname': first_name,
        'lastname': last_name,
        'dob': dob,
        'departmentid': str(department_id),
    }

    optional = {
        'email': email,
        'mobilephone': phone,
        'sex': normalize_sex(payload.get('sex')),
        'address1': build_street_address(payload.get('house_number'), payload.get('street')),
        'city': str(payload.get('city') or '').strip(),
        'state': get_state_abbreviation(payload.get('state')),
        'zip': zip_code,
    }
    fields.update({key: value for key, value in optional.items() if value})
    return fields
