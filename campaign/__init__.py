"""Campaign composition: recipients and templates in, queued jobs out."""

from campaign.composer import CampaignComposer, ComposeResult
from campaign.templates import PayloadTemplate, Recipient, TemplateError

__all__ = ['CampaignComposer', 'ComposeResult', 'PayloadTemplate', 'Recipient', 'TemplateError']
