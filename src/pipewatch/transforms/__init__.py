"""
pipewatch.transforms — GitLab payload normalization.

    from pipewatch.transforms.normalize import to_pipelines, BranchFilter
"""
