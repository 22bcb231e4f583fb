from django.contrib import admin

from .models import Client, Expense, Note, Project, Subscription, Task


class ProjectInline(admin.TabularInline):
    model = Project
    extra = 0
    fields = ('name', 'type', 'status', 'budget', 'billing_status')
    readonly_fields = ('billing_status',)


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ('name', 'email', 'billing_email', 'status', 'health_score', 'stripe_customer_id')
    list_filter = ('status',)
    search_fields = ('name', 'email', 'billing_email')
    inlines = [ProjectInline]


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'client', 'type', 'status', 'budget', 'billing_status', 'billed_invoice')
    list_filter = ('status', 'type', 'billing_status')
    search_fields = ('name', 'client__name')
    # Only the billing pipeline flips these.
    readonly_fields = ('billing_status', 'billed_invoice')


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ('title', 'status', 'priority', 'due_date', 'client', 'project')
    list_filter = ('status', 'priority')
    search_fields = ('title',)


@admin.register(Expense)
class ExpenseAdmin(admin.ModelAdmin):
    list_display = ('description', 'category', 'amount', 'date', 'client', 'pass_through_policy', 'billing_status')
    list_filter = ('category', 'pass_through_policy', 'billing_status')
    search_fields = ('description', 'vendor', 'client__name')
    readonly_fields = ('billing_status', 'billed_invoice')


@admin.register(Note)
class NoteAdmin(admin.ModelAdmin):
    list_display = ('__str__', 'client', 'project', 'created_at')


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ('name', 'client', 'amount', 'billing_cadence', 'status', 'next_billing')
    list_filter = ('status', 'billing_cadence')
    search_fields = ('name', 'client__name', 'stripe_subscription_id')
