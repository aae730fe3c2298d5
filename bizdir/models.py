"""
Mapping from Google Places API payloads to business/review records.

Records are plain dicts shaped like ``businesses`` / ``reviews`` rows, with
``photos`` and ``hours`` left decoded (BusinessDB serializes them).
"""

from typing import Any, Callable, Dict, Iterable, List, Optional


def category_from_query(query: str, region_suffix: str = "") -> str:
    """Strip the region suffix used for searching ("visa services Dubai UAE" → "visa services")."""
    category = query.strip()
    suffix = region_suffix.strip()
    if suffix and category.lower().endswith(suffix.lower()):
        category = category[: -len(suffix)]
    return category.strip()


def has_target_keyword(name: str, types: Iterable[str], keywords: Iterable[str]) -> bool:
    haystack = " ".join([name or ""] + [t.replace("_", " ") for t in types or []]).lower()
    return any(k.lower() in haystack for k in keywords if k)


def business_from_place(
    place: Dict[str, Any],
    category: Optional[str],
    photo_url: Callable[[str, int], str],
    max_photos: int = 6,
    logo_max_width: int = 200,
    photo_max_width: int = 400,
    target_keywords: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Build a business record from a Text Search result or a Details result.

    ``photo_url(reference, max_width)`` turns a photo reference into a
    fetchable URL. The first photo doubles as the logo.
    """
    place_id = place.get("place_id") or place.get("id")
    if not place_id:
        raise ValueError("place payload has no place_id")

    location = (place.get("geometry") or {}).get("location") or {}
    opening = place.get("opening_hours") or {}
    raw_photos = place.get("photos") or []

    photos: List[Dict[str, Any]] = []
    for p in raw_photos[:max_photos]:
        ref = p.get("photo_reference")
        if not ref:
            continue
        photos.append({
            "url": photo_url(ref, photo_max_width),
            "photo_reference": ref,
            "width": p.get("width"),
            "height": p.get("height"),
        })

    first_ref = raw_photos[0].get("photo_reference") if raw_photos else None
    name = (place.get("name") or "").strip()

    return {
        "id": place_id,
        "name": name,
        "address": place.get("formatted_address") or place.get("vicinity"),
        "phone": place.get("formatted_phone_number") or place.get("international_phone_number"),
        "website": place.get("website"),
        "lat": location.get("lat"),
        "lng": location.get("lng"),
        "rating": place.get("rating"),
        "review_count": place.get("user_ratings_total") or 0,
        "category": category,
        "business_status": place.get("business_status"),
        "photo_reference": first_ref,
        "logo_url": photo_url(first_ref, logo_max_width) if first_ref else None,
        "is_open": opening.get("open_now"),
        "price_level": place.get("price_level"),
        "has_target_keyword": has_target_keyword(name, place.get("types") or [], target_keywords),
        "hours": opening.get("weekday_text"),
        "photos": photos,
    }


def reviews_from_place(business_id: str, place: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Review rows from a Details payload; ids are ``google_{business_id}_{index}``."""
    reviews = []
    for index, r in enumerate(place.get("reviews") or []):
        reviews.append({
            "id": f"google_{business_id}_{index}",
            "author_name": r.get("author_name"),
            "rating": r.get("rating"),
            "text": r.get("text"),
            "time_ago": r.get("relative_time_description"),
            "profile_photo_url": r.get("profile_photo_url"),
        })
    return reviews
