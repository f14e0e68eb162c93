from publish_pipeline.cli import cli

cli()
