"""Static notification template catalog and its database seeder."""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import NotificationTemplate

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class Category(str, Enum):
    ROUTINE_REMINDER = "ROUTINE_REMINDER"
    GAMIFICATION = "GAMIFICATION"
    BEHAVIORAL_TRIGGER = "BEHAVIORAL_TRIGGER"
    PERSONALIZED_CONTENT = "PERSONALIZED_CONTENT"
    APPOINTMENT = "APPOINTMENT"
    PROMOTIONAL = "PROMOTIONAL"


# Preference toggle that gates each category
CATEGORY_PREFERENCE = {
    Category.ROUTINE_REMINDER: "routine_reminders",
    Category.GAMIFICATION: "gamification",
    Category.BEHAVIORAL_TRIGGER: "behavioral_triggers",
    Category.PERSONALIZED_CONTENT: "personalized_content",
    Category.APPOINTMENT: "appointments",
    Category.PROMOTIONAL: "promotional",
}


class TemplateNotFoundError(LookupError):
    """Raised when a template id is not in the catalog."""


@dataclass(frozen=True)
class ActionButton:
    text: str
    action: str
    deep_link: Optional[str] = None


@dataclass(frozen=True)
class Template:
    """A reusable message definition.

    ``conditions`` is an optional trigger matcher: boolean entries require the
    context value to be truthy, numeric entries are minimum thresholds.
    """
    id: str
    name: str
    category: Category
    priority: Priority
    title: str
    body: str
    deep_link: Optional[str] = None
    image_url: Optional[str] = None
    action_buttons: tuple = ()
    conditions: Optional[Dict[str, Any]] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        if not self.conditions:
            return True
        for key, expected in self.conditions.items():
            actual = context.get(key)
            if isinstance(expected, bool):
                if bool(actual) != expected:
                    return False
            elif isinstance(expected, (int, float)):
                if actual is None or actual < expected:
                    return False
            elif actual != expected:
                return False
        return True


def _buttons(*rows) -> tuple:
    return tuple(ActionButton(*row) for row in rows)


TEMPLATES: List[Template] = [
    # Routine reminders
    Template(
        id="morning_routine_basic",
        name="Morning Routine - Basic",
        category=Category.ROUTINE_REMINDER,
        priority=Priority.NORMAL,
        title="Good morning, {firstName}! ☀️",
        body="Ready to start your day with glowing skin? Don't forget your morning routine!",
        deep_link="app://routine/morning",
        action_buttons=_buttons(
            ("Complete Routine", "complete_routine", "app://routine/morning"),
            ("Skip Today", "skip_routine"),
        ),
    ),
    Template(
        id="evening_routine_basic",
        name="Evening Routine - Basic",
        category=Category.ROUTINE_REMINDER,
        priority=Priority.NORMAL,
        title="Time to unwind 🌙",
        body="End your day right with your evening skincare routine. Your skin will thank you!",
        deep_link="app://routine/evening",
        action_buttons=_buttons(
            ("Start Routine", "complete_routine", "app://routine/evening"),
            ("Skip Tonight", "skip_routine"),
        ),
    ),
    Template(
        id="weekend_treatment",
        name="Weekend Treatment Reminder",
        category=Category.ROUTINE_REMINDER,
        priority=Priority.NORMAL,
        title="Weekend self-care time! 🧖‍♀️",
        body="It's the perfect day for a face mask or special treatment. Treat yourself!",
        deep_link="app://treatments",
        action_buttons=_buttons(
            ("Browse Treatments", "view_treatments", "app://treatments"),
            ("Maybe Later", "snooze"),
        ),
    ),

    # Gamification
    Template(
        id="streak_milestone",
        name="Streak Milestone",
        category=Category.GAMIFICATION,
        priority=Priority.HIGH,
        title="Achievement Unlocked! 🎉",
        body="You've completed your {routine_type} routine {streak_days} days in a row! Keep it up, {firstName}!",
        deep_link="app://profile/achievements",
        action_buttons=_buttons(
            ("View Achievements", "view_achievements", "app://profile/achievements"),
            ("Share Progress", "share_streak"),
        ),
        conditions={"streak_milestone": True},
    ),
    Template(
        id="tier_upgrade",
        name="Tier Upgrade",
        category=Category.GAMIFICATION,
        priority=Priority.HIGH,
        title="Congratulations! 👑",
        body="You've reached {tier_name} status! Enjoy your new perks and exclusive benefits.",
        deep_link="app://profile/tier",
        action_buttons=_buttons(
            ("View Perks", "view_perks", "app://profile/tier"),
            ("Share Achievement", "share_achievement"),
        ),
        conditions={"tier_upgrade": True},
    ),
    Template(
        id="streak_protection",
        name="Streak Protection",
        category=Category.GAMIFICATION,
        priority=Priority.HIGH,
        title="Your {streak_days}-day streak is at risk! ⚠️",
        body="You haven't logged your routine yet today. Keep that momentum going!",
        deep_link="app://routine",
        action_buttons=_buttons(
            ("Log Routine", "log_routine", "app://routine"),
            ("Remind Later", "remind_later"),
        ),
        conditions={"streak_days": 3},
    ),
    Template(
        id="challenge_available",
        name="Challenge Available",
        category=Category.GAMIFICATION,
        priority=Priority.HIGH,
        title="New Challenge: {challenge_name}!",
        body="Join now and earn {challenge_reward}.",
        deep_link="app://challenges/{challenge_id}",
        action_buttons=_buttons(
            ("Join Challenge", "join_challenge", "app://challenges/{challenge_id}"),
            ("View Details", "view_challenge"),
        ),
    ),
    Template(
        id="challenge_complete",
        name="Challenge Completion",
        category=Category.GAMIFICATION,
        priority=Priority.HIGH,
        title="✨ Challenge conquered!",
        body="You've completed the {challenge_name} challenge! Claim your reward.",
        deep_link="app://challenges/rewards",
        action_buttons=_buttons(
            ("Claim Reward", "claim_reward", "app://challenges/rewards"),
            ("Next Challenge", "view_challenges", "app://challenges"),
        ),
        conditions={"challenge_completed": True},
    ),

    # Behavioral triggers
    Template(
        id="reengagement",
        name="Welcome Back",
        category=Category.BEHAVIORAL_TRIGGER,
        priority=Priority.NORMAL,
        title="We miss you! 💚",
        body="It's been {days_inactive} days. Your skin misses its routine too. Come back and continue your glow journey!",
        deep_link="app://routine",
        action_buttons=_buttons(
            ("Continue Journey", "open_app", "app://routine"),
            ("Update Preferences", "preferences", "app://settings"),
        ),
        conditions={"days_inactive": 7},
    ),
    Template(
        id="comeback_gentle",
        name="Gentle Re-engagement",
        category=Category.BEHAVIORAL_TRIGGER,
        priority=Priority.NORMAL,
        title="We miss you, {firstName}! 💕",
        body="It's been a few days since your last visit. Your skin is waiting for some love!",
        deep_link="app://routine",
        action_buttons=_buttons(
            ("Resume Routine", "start_routine", "app://routine"),
            ("Customize Settings", "settings", "app://settings"),
        ),
        conditions={"days_inactive": 3},
    ),
    Template(
        id="booking_reminder",
        name="Booking Reminder",
        category=Category.BEHAVIORAL_TRIGGER,
        priority=Priority.NORMAL,
        title="Time for your next glow-up session? ✨",
        body="It's been {weeks_since_last} weeks since your last visit. Ready to book your next treatment?",
        deep_link="app://appointments/book",
        action_buttons=_buttons(
            ("Book Now", "book_appointment", "app://appointments/book"),
            ("Remind Me Later", "snooze_booking"),
        ),
        conditions={"weeks_since_last": 6},
    ),
    Template(
        id="product_recommendation",
        name="Product Recommendation",
        category=Category.BEHAVIORAL_TRIGGER,
        priority=Priority.NORMAL,
        title="Perfect for your routine! 🎯",
        body="Based on your {skin_type} skin, we think you'd love {product_name}",
        deep_link="app://products/{product_id}",
        image_url="{product_image}",
        action_buttons=_buttons(
            ("View Product", "view_product", "app://products/{product_id}"),
            ("Add to Cart", "add_to_cart"),
        ),
    ),
    Template(
        id="appointment_follow_up",
        name="Post-Appointment Follow-up",
        category=Category.BEHAVIORAL_TRIGGER,
        priority=Priority.NORMAL,
        title="How was your treatment? ✨",
        body="We'd love to hear about your recent visit! Share your experience and get aftercare tips.",
        deep_link="app://feedback",
        action_buttons=_buttons(
            ("Leave Review", "leave_review", "app://feedback"),
            ("Aftercare Tips", "aftercare", "app://aftercare"),
        ),
        conditions={"appointment_completed": True},
    ),

    # Personalized content
    Template(
        id="skin_tip",
        name="Skin Concern Tip",
        category=Category.PERSONALIZED_CONTENT,
        priority=Priority.NORMAL,
        title="Managing {skin_concern}? 💡",
        body="Here's today's expert tip: {tip}",
        deep_link="app://tips/{tip_id}",
        action_buttons=_buttons(
            ("Read More", "read_tip", "app://tips/{tip_id}"),
            ("Save Tip", "save_tip"),
        ),
    ),
    Template(
        id="weather_skincare",
        name="Weather-Based Skincare",
        category=Category.PERSONALIZED_CONTENT,
        priority=Priority.NORMAL,
        title="{weather_condition} weather alert! 🌤️",
        body="UV index is {uv_index} today, which calls for extra {skin_advice}. Your skin will thank you!",
        deep_link="app://products/sunscreen",
        action_buttons=_buttons(
            ("Shop SPF", "shop_spf", "app://products/sunscreen"),
            ("Set Reminder", "set_reminder"),
        ),
    ),
    Template(
        id="ingredient_spotlight",
        name="Ingredient Spotlight",
        category=Category.PERSONALIZED_CONTENT,
        priority=Priority.LOW,
        title="Ingredient spotlight: {ingredient} 🧪",
        body="Perfect for your {skin_type} skin! Learn how {ingredient} can transform your routine.",
        deep_link="app://ingredients/{ingredient_id}",
        action_buttons=_buttons(
            ("Learn More", "view_ingredient", "app://ingredients/{ingredient_id}"),
            ("Shop Products", "shop_ingredient", "app://shop?ingredient={ingredient_id}"),
        ),
    ),
    Template(
        id="progress_insight",
        name="Progress Insight",
        category=Category.PERSONALIZED_CONTENT,
        priority=Priority.NORMAL,
        title="Your skin journey update 📊",
        body="After {routine_days} days of consistent care, here's what we've noticed about your progress!",
        deep_link="app://progress",
        action_buttons=_buttons(
            ("View Progress", "view_progress", "app://progress"),
            ("Adjust Goals", "update_goals", "app://goals"),
        ),
        conditions={"has_progress_photos": True},
    ),

    # Appointments
    Template(
        id="appointment_reminder_24h",
        name="24-Hour Appointment Reminder",
        category=Category.APPOINTMENT,
        priority=Priority.HIGH,
        title="Appointment tomorrow! 📅",
        body="Don't forget: {service_name} with {staff_name} at {appointment_time}",
        deep_link="app://appointments/{appointment_id}",
        action_buttons=_buttons(
            ("View Details", "view_appointment", "app://appointments/{appointment_id}"),
            ("Reschedule", "reschedule", "app://booking/reschedule/{appointment_id}"),
        ),
    ),
    Template(
        id="appointment_reminder_2h",
        name="2-Hour Appointment Reminder",
        category=Category.APPOINTMENT,
        priority=Priority.URGENT,
        title="Appointment in 2 hours! ⏰",
        body="{service_name} at {clinic_name} - {appointment_time}. See you soon!",
        deep_link="app://appointments/{appointment_id}",
        action_buttons=_buttons(
            ("Get Directions", "directions", "maps://directions?to={clinic_address}"),
            ("Call Clinic", "call_clinic", "tel:{clinic_phone}"),
        ),
    ),
    Template(
        id="appointment_post_care",
        name="Post-Treatment Care",
        category=Category.APPOINTMENT,
        priority=Priority.HIGH,
        title="Post-Treatment Care 💆‍♀️",
        body="Follow these care instructions for optimal results from your {service_name}",
        deep_link="app://aftercare/{service_id}",
        action_buttons=_buttons(
            ("View Instructions", "view_aftercare", "app://aftercare/{service_id}"),
            ("Set Reminders", "set_aftercare_reminders"),
        ),
    ),

    # Promotional
    Template(
        id="flash_sale",
        name="Flash Sale Alert",
        category=Category.PROMOTIONAL,
        priority=Priority.HIGH,
        title="⚡ Flash Sale: {discount}% off!",
        body="Limited time: {discount}% off {product_category}! Sale ends in {hours_remaining} hours.",
        deep_link="app://shop/sale",
        action_buttons=_buttons(
            ("Shop Sale", "shop_sale", "app://shop/sale"),
            ("Save for Later", "save_sale"),
        ),
    ),
    Template(
        id="new_product_launch",
        name="New Product Launch",
        category=Category.PROMOTIONAL,
        priority=Priority.NORMAL,
        title="🆕 New arrival: {product_name}",
        body="Perfect for {skin_type} skin! Be among the first to try {product_name}.",
        deep_link="app://products/{product_id}",
        action_buttons=_buttons(
            ("Learn More", "view_product", "app://products/{product_id}"),
            ("Add to Wishlist", "add_wishlist"),
        ),
    ),
    Template(
        id="personalized_offer",
        name="Personalized Offer",
        category=Category.PROMOTIONAL,
        priority=Priority.NORMAL,
        title="Special offer just for you! 🎁",
        body="Based on your {skin_concerns}, we think you'll love this {offer_type}!",
        deep_link="app://offers/{offer_id}",
        action_buttons=_buttons(
            ("View Offer", "view_offer", "app://offers/{offer_id}"),
            ("Not Interested", "dismiss_offer"),
        ),
    ),
]


class TemplateRegistry:
    """In-memory, read-only lookup over the template catalog."""

    def __init__(self, templates: Optional[List[Template]] = None):
        catalog = TEMPLATES if templates is None else templates
        self._templates: Dict[str, Template] = {t.id: t for t in catalog}

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def __iter__(self):
        return iter(self._templates.values())

    def get(self, template_id: str) -> Template:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(f"Unknown notification template: {template_id}")


def _button_dicts(template: Template) -> List[dict]:
    return [
        {"text": b.text, "action": b.action, "deep_link": b.deep_link}
        for b in template.action_buttons
    ]


async def seed_templates(session: AsyncSession, registry: TemplateRegistry) -> int:
    """Upsert every catalog template by id. Safe to run on every startup."""
    result = await session.execute(select(NotificationTemplate))
    existing = {row.id: row for row in result.scalars().all()}

    count = 0
    for template in registry:
        row = existing.get(template.id)
        if row is None:
            row = NotificationTemplate(id=template.id)
            session.add(row)
        row.name = template.name
        row.category = template.category.value
        row.priority = template.priority.value
        row.title = template.title
        row.body = template.body
        row.deep_link = template.deep_link
        row.image_url = template.image_url
        row.action_buttons = _button_dicts(template)
        row.conditions = template.conditions
        count += 1

    await session.commit()
    logger.info(f"Seeded {count} notification templates")
    return count
