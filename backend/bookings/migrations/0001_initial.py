import bookings.models
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


STAGE_CHOICES = [
    ('pending', 'Pending'),
    ('driver_accepted', 'Driver Accepted'),
    ('offer_sent', 'Offer Sent'),
    ('offer_accepted', 'Offer Accepted'),
    ('payment_confirmed', 'Payment Confirmed'),
    ('all_set', 'All Set'),
    ('driver_heading_to_pickup', 'Driver Heading To Pickup'),
    ('driver_arrived_at_pickup', 'Driver Arrived At Pickup'),
    ('passenger_onboard', 'Passenger Onboard'),
    ('in_transit', 'In Transit'),
    ('completed', 'Completed'),
    ('cancelled', 'Cancelled'),
    ('expired', 'Expired'),
    ('refunded', 'Refunded'),
    ('disputed', 'Disputed'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('booking_code', models.CharField(default=bookings.models.generate_booking_code, max_length=20, unique=True)),
                ('pickup_address', models.TextField(blank=True, default='')),
                ('dropoff_address', models.TextField(blank=True, default='')),
                ('pickup_time', models.DateTimeField(blank=True, null=True)),
                ('passenger_count', models.PositiveIntegerField(default=1)),
                ('legacy_status', models.CharField(blank=True, max_length=40, null=True)),
                ('rider_stage_flag', models.CharField(blank=True, max_length=40, null=True)),
                ('chauffeur_stage_flag', models.CharField(blank=True, max_length=40, null=True)),
                ('ride_stage', models.CharField(blank=True, max_length=40, null=True)),
                ('payment_confirmation_stage', models.CharField(blank=True, max_length=40, null=True)),
                ('quoted_price_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('accepted_price_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('payment_provider_reference', models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ('paid_amount_cents', models.PositiveIntegerField(blank=True, null=True)),
                ('paid_currency', models.CharField(blank=True, max_length=3, null=True)),
                ('canonical_stage', models.CharField(choices=STAGE_CHOICES, default='pending', max_length=40)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('chauffeur', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='chauffeur_bookings', to=settings.AUTH_USER_MODEL)),
                ('operator', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='operated_bookings', to=settings.AUTH_USER_MODEL)),
                ('rider', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='rider_bookings', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'bookings',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='BookingStatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('recorded_stage', models.CharField(choices=STAGE_CHOICES, max_length=40)),
                ('actor_role', models.CharField(choices=[('rider', 'Rider'), ('chauffeur', 'Chauffeur'), ('operator', 'Operator'), ('system', 'System')], max_length=20)),
                ('notes', models.TextField(blank=True, default='')),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('actor', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('booking', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='history', to='bookings.booking')),
            ],
            options={
                'db_table': 'booking_status_history',
                'ordering': ['id'],
                'verbose_name_plural': 'booking status history',
            },
        ),
    ]
